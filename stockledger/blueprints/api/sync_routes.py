import logging

from flask import Blueprint, current_app
from flask_login import current_user, login_required

from ...extensions import limiter
from ...services.sync_service import SyncResolver
from ...utils.api_responses import APIResponse

logger = logging.getLogger(__name__)

sync_api_bp = Blueprint('sync_api', __name__)


def _sync_rate_limit():
    return current_app.config.get('SYNC_RATE_LIMIT', '120 per minute')


@sync_api_bp.route('/sync/terminals/<int:terminal_id>/queue', methods=['POST'])
@login_required
@limiter.limit(_sync_rate_limit)
def sync_terminal_queue(terminal_id):
    """Apply a terminal's offline queue; each result tells the terminal whether to drop or resend."""
    data = APIResponse.handle_request_content()
    results = SyncResolver.sync_terminal_queue(terminal_id, data.get('operations'), actor=current_user)
    terminal = SyncResolver.get_terminal(terminal_id)
    return APIResponse.success(
        {
            'results': [result.to_dict() for result in results],
            'terminal': terminal.to_dict(),
        },
        f'{len(results)} operation(s) processed',
    )


@sync_api_bp.route('/sync/terminals/<int:terminal_id>/heartbeat', methods=['POST'])
@login_required
def heartbeat(terminal_id):
    terminal = SyncResolver.record_heartbeat(terminal_id)
    return APIResponse.success(terminal.to_dict(), 'Heartbeat recorded')
