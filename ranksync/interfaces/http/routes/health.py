from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ranksync.database.db_manager import db
from ranksync.observability.metrics import update_subscriber_gauge

health_bp = Blueprint("health_bp", __name__)


def _subscriber_count() -> int:
    broadcaster = current_app.extensions.get("list_broadcaster")
    if broadcaster is None:
        return 0
    return broadcaster.subscriber_count()


def _aggregate_backlog() -> int:
    recomputer = current_app.extensions.get("aggregate_recomputer")
    if recomputer is None:
        return 0
    return recomputer.qsize()


@health_bp.route("/healthz")
def healthz():
    status = 200
    checks = {}

    try:
        db.session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as exc:  # pragma: no cover - DB failure path
        status = 503
        checks["database"] = f"error: {exc}"

    checks["subscribers"] = _subscriber_count()
    checks["aggregate_backlog"] = _aggregate_backlog()

    overall = "ok" if status == 200 else "degraded"
    return jsonify({"status": overall, "checks": checks}), status


@health_bp.route("/readyz")
def readyz():
    count = _subscriber_count()
    update_subscriber_gauge(count)
    threshold = int(current_app.config.get("READINESS_SUBSCRIBER_THRESHOLD", 1000))
    healthy = count <= threshold
    status = 200 if healthy else 503
    payload = {
        "status": "ready" if healthy else "blocked",
        "subscribers": count,
        "aggregate_backlog": _aggregate_backlog(),
        "threshold": threshold,
    }
    return jsonify(payload), status
