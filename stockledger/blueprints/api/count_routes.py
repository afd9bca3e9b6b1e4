import logging

from flask import Blueprint
from flask_login import current_user, login_required

from ...authz import manager_roles
from ...services.count_session_service import CountSessionManager, blind_projection
from ...services.variance_service import VarianceDetector
from ...utils.api_responses import APIResponse, require_idempotency_key

logger = logging.getLogger(__name__)

count_api_bp = Blueprint('count_api', __name__)


def _reveals_system_quantities() -> bool:
    return current_user.has_role(manager_roles())


@count_api_bp.route('/count-sessions', methods=['POST'])
@login_required
def start_count_session():
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    session = CountSessionManager.start_count_session(
        scope=data.get('scope'),
        count_type=data.get('count_type'),
        blind=bool(data.get('blind', False)),
        counters=data.get('counters'),
        actor=current_user,
        scheduled_for=data.get('scheduled_for'),
        notes=data.get('notes'),
        idempotency_key=key,
    )
    return APIResponse.success(session.to_dict(), 'Count session created', 201)


@count_api_bp.route('/count-sessions/<int:session_id>', methods=['GET'])
@login_required
def session_detail(session_id):
    return APIResponse.success(CountSessionManager.session_view(session_id, current_user))


@count_api_bp.route('/count-sessions/<int:session_id>/begin', methods=['POST'])
@login_required
def begin_session(session_id):
    key = require_idempotency_key(APIResponse.handle_request_content())
    session = CountSessionManager.begin_session(session_id, current_user, idempotency_key=key)
    return APIResponse.success(session.to_dict(), 'Count session started')


@count_api_bp.route('/count-sessions/<int:session_id>/counts', methods=['POST'])
@login_required
def submit_count(session_id):
    """Enter a count; a flagged item's second count goes through the same route."""
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    result = CountSessionManager.submit_count(
        session_id,
        data.get('product_id'),
        data.get('counted_quantity'),
        counter=current_user,
        idempotency_key=key,
    )
    payload = result.to_dict(reveal=_reveals_system_quantities())
    if result.replayed:
        return APIResponse.success(payload, 'Already processed', 200, replayed=True)
    return APIResponse.success(payload, 'Count recorded', 201, replayed=False)


@count_api_bp.route('/count-sessions/<int:session_id>/close', methods=['POST'])
@login_required
def close_session(session_id):
    key = require_idempotency_key(APIResponse.handle_request_content())
    session = CountSessionManager.close_session(session_id, current_user, idempotency_key=key)
    return APIResponse.success(session.to_dict(), 'Count session closed')


@count_api_bp.route('/count-sessions/<int:session_id>/cancel', methods=['POST'])
@login_required
def cancel_session(session_id):
    key = require_idempotency_key(APIResponse.handle_request_content())
    session = CountSessionManager.cancel_scheduled_session(session_id, current_user, idempotency_key=key)
    return APIResponse.success(session.to_dict(), 'Scheduled count session cancelled')


@count_api_bp.route('/counts/<int:count_id>/resolve', methods=['POST'])
@login_required
def resolve_dispute(count_id):
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    count = VarianceDetector().resolve_dispute(
        count_id,
        data.get('verified_quantity'),
        current_user,
        idempotency_key=key,
        note=data.get('note'),
    )
    return APIResponse.success(blind_projection(count, count.session, reveal=True), 'Count verified')
