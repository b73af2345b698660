import logging

from flask import Blueprint, Response, current_app, jsonify
from flask_cors import cross_origin
from flask_login import login_required

from config import Config
from ranksync.core.errors import ListSyncError
from ranksync.support.identity import resolve_user_id

logger = logging.getLogger(__name__)

events_bp = Blueprint('events_bp', __name__, url_prefix='/api/lists')


def _get_broadcaster():
    return current_app.extensions.get('list_broadcaster')


@events_bp.route('/<list_id>/events')
@cross_origin(origins=Config.CORS_ALLOWED_ORIGINS, supports_credentials=True)  # ensure CORS headers for SSE
@login_required
def stream_list_events(list_id):
    broadcaster = _get_broadcaster()
    if broadcaster is None:
        return Response('list events unavailable', status=503)

    user_id = resolve_user_id()
    # Only the owner may watch a list; raises before the stream opens.
    try:
        current_app.extensions['list_service'].get_list(list_id, user_id)
    except ListSyncError as exc:
        return jsonify(exc.to_dict()), exc.status

    heartbeat = int(current_app.config.get('SSE_HEARTBEAT_SECONDS', 15))

    def _gen():
        try:
            for chunk in broadcaster.subscribe(user_id, list_id, heartbeat_seconds=heartbeat):
                yield chunk
        except GeneratorExit:
            logger.info('SSE client disconnected from list %s', list_id)

    headers = {
        'Content-Type': 'text/event-stream',
        'Cache-Control': 'no-cache, no-transform',
        'Connection': 'keep-alive',
        'X-Accel-Buffering': 'no',
    }
    return Response(_gen(), headers=headers)
