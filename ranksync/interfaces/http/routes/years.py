"""Year aggregate and year lock routes."""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from flask_login import login_required

from ranksync.core.errors import ListSyncError
from ranksync.database.db_manager import YearAggregate, db
from ranksync.domain.lists.year_lock import is_year_locked

years_bp = Blueprint("years_bp", __name__, url_prefix="/api/years")


@years_bp.errorhandler(ListSyncError)
def _handle_year_error(exc: ListSyncError):
    return jsonify(exc.to_dict()), exc.status


@years_bp.route("/<int:year>/aggregate", methods=["GET"])
@login_required
def get_aggregate(year: int):
    row = db.session.get(YearAggregate, year)
    recomputer = current_app.extensions.get("aggregate_recomputer")
    pending = bool(recomputer and year in recomputer.pending_years())
    if row is None:
        return jsonify({"year": year, "albums": [], "participant_count": 0, "pending": pending, "locked": is_year_locked(year)}), 200
    body = row.to_dict()
    body["pending"] = pending
    body["locked"] = is_year_locked(year)
    return jsonify(body), 200


@years_bp.route("/<int:year>/lock", methods=["POST"])
@login_required
def lock_year(year: int):
    return jsonify(current_app.extensions["list_service"].lock_year(year)), 200


@years_bp.route("/<int:year>/lock", methods=["DELETE"])
@login_required
def unlock_year(year: int):
    return jsonify(current_app.extensions["list_service"].unlock_year(year)), 200


__all__ = ["years_bp"]
