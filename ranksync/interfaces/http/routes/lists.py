"""List CRUD, item write and main-list routes with ownership enforcement.

Every write commits through the list service first; the change is broadcast
to the list's subscribers only after that succeeds, excluding the socket that
made the request (sent as ``X-Socket-ID``).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required

from ranksync.core.errors import ListSyncError, ValidationError
from ranksync.support.identity import resolve_user_id

logger = logging.getLogger(__name__)

lists_bp = Blueprint("lists_bp", __name__, url_prefix="/api/lists")

SOCKET_HEADER = "X-Socket-ID"
_METADATA_KEYS = ("name", "year", "group_id")


def _service():
    return current_app.extensions["list_service"]


def _broadcaster():
    return current_app.extensions.get("list_broadcaster")


def _origin_socket_id() -> Optional[str]:
    return request.headers.get(SOCKET_HEADER) or None


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", code="invalid_payload")
    return data


def _notify(list_id: str, change_kind: str, view: Optional[Dict[str, Any]], *, origin: Optional[str] = None) -> None:
    broadcaster = _broadcaster()
    if broadcaster is None:
        return
    payload: Dict[str, Any] = {}
    if view is not None:
        payload["items"] = view.get("items", [])
        payload["list"] = {k: v for k, v in view.items() if k != "items"}
    try:
        broadcaster.broadcast(list_id, change_kind, origin_socket_id=origin, payload=payload)
    except Exception:
        # The write already committed; a failed push must not fail the request.
        logger.exception("Broadcast failed for list %s", list_id, extra={"list_id": list_id})


@lists_bp.errorhandler(ListSyncError)
def _handle_list_error(exc: ListSyncError):
    logger.info("List request rejected (%s): %s", exc.code, exc.message)
    return jsonify(exc.to_dict()), exc.status


@lists_bp.route("", methods=["GET"])
@login_required
def list_lists():
    user_id = resolve_user_id()
    return jsonify({"lists": _service().list_lists(user_id)}), 200


@lists_bp.route("", methods=["POST"])
@login_required
def create_list():
    data = _json_body()
    user_id = resolve_user_id()
    result = _service().create_list(
        user_id,
        data.get("name"),
        year=data.get("year"),
        group_id=data.get("group_id"),
        entries=data.get("items") or data.get("entries") or [],
    )
    return jsonify(result.to_dict()), 201


@lists_bp.route("/<list_id>", methods=["GET"])
@login_required
def get_list(list_id: str):
    return jsonify(_service().get_list(list_id, resolve_user_id())), 200


@lists_bp.route("/<list_id>", methods=["PATCH"])
@login_required
def update_list(list_id: str):
    data = _json_body()
    patch = {key: data[key] for key in _METADATA_KEYS if key in data}
    result = _service().update_metadata(list_id, resolve_user_id(), **patch)
    _notify(list_id, "metadata", result.list, origin=_origin_socket_id())
    return jsonify(result.to_dict()), 200


@lists_bp.route("/<list_id>", methods=["DELETE"])
@login_required
def delete_list(list_id: str):
    summary = _service().delete_list(list_id, resolve_user_id())
    _notify(list_id, "deleted", None, origin=_origin_socket_id())
    return jsonify({"success": True, "list": summary}), 200


@lists_bp.route("/<list_id>/items", methods=["PUT"])
@login_required
def replace_items(list_id: str):
    data = _json_body()
    entries = data.get("items")
    if entries is None:
        raise ValidationError("'items' is required", code="invalid_payload")
    result = _service().replace_items(list_id, resolve_user_id(), entries)
    _notify(list_id, "replaced", result.list, origin=_origin_socket_id())
    return jsonify(result.to_dict()), 200


@lists_bp.route("/<list_id>/items", methods=["PATCH"])
@login_required
def incremental_update(list_id: str):
    data = _json_body()
    result = _service().incremental_update(
        list_id,
        resolve_user_id(),
        added=data.get("added"),
        removed=data.get("removed"),
        updated=data.get("updated"),
    )
    if result.change_count:
        _notify(list_id, "updated", result.list, origin=_origin_socket_id())
    return jsonify(result.to_dict()), 200


@lists_bp.route("/<list_id>/reorder", methods=["PUT"])
@login_required
def reorder(list_id: str):
    data = _json_body()
    result = _service().reorder(list_id, resolve_user_id(), data.get("order"))
    if result.change_count:
        _notify(list_id, "reordered", result.list, origin=_origin_socket_id())
    return jsonify(result.to_dict()), 200


@lists_bp.route("/<list_id>/main", methods=["POST"])
@login_required
def set_main(list_id: str):
    data = _json_body()
    is_main = data.get("is_main", True)
    if not isinstance(is_main, bool):
        raise ValidationError("'is_main' must be a boolean", code="invalid_payload")
    user_id = resolve_user_id()
    service = _service()
    result = service.set_main(list_id, user_id, is_main)
    _notify(list_id, "metadata", result.list, origin=_origin_socket_id())
    # Lists that lost main status changed without their viewers asking.
    for other_id in result.previous_main_ids:
        _notify(other_id, "metadata", service.get_list(other_id, user_id))
    body = result.to_dict()
    body["previous_main_ids"] = result.previous_main_ids
    return jsonify(body), 200


__all__ = ["lists_bp"]
