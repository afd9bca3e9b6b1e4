import logging

from flask import Blueprint
from flask_login import current_user, login_required

from ...services import reconciliation_service
from ...services.reconciliation_service import ReconciliationWorkflow
from ...utils.api_responses import APIResponse, require_idempotency_key

logger = logging.getLogger(__name__)

reconciliation_api_bp = Blueprint('reconciliation_api', __name__)


def _reconciliation_response(reconciliation, replayed, message, status_code=200):
    if replayed:
        return APIResponse.success(reconciliation.to_dict(), 'Already processed', 200, replayed=True)
    return APIResponse.success(reconciliation.to_dict(), message, status_code, replayed=False)


@reconciliation_api_bp.route('/count-sessions/<int:session_id>/reconciliation', methods=['POST'])
@login_required
def submit_reconciliation(session_id):
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    reconciliation, replayed = reconciliation_service.submit_reconciliation.execute(
        session_id=session_id, actor=current_user, notes=data.get('notes'), idempotency_key=key
    )
    return _reconciliation_response(reconciliation, replayed, 'Reconciliation submitted', 201)


@reconciliation_api_bp.route('/reconciliations/<int:reconciliation_id>', methods=['GET'])
@login_required
def reconciliation_detail(reconciliation_id):
    return APIResponse.success(ReconciliationWorkflow.get_reconciliation(reconciliation_id).to_dict())


@reconciliation_api_bp.route('/reconciliations/<int:reconciliation_id>/approve', methods=['POST'])
@login_required
def approve_reconciliation(reconciliation_id):
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    reconciliation, replayed = reconciliation_service.approve_reconciliation.execute(
        reconciliation_id=reconciliation_id, actor=current_user, idempotency_key=key
    )
    message = (
        'First approval recorded; awaiting second approver'
        if reconciliation.awaiting_second_approval
        else 'Reconciliation approved'
    )
    return _reconciliation_response(reconciliation, replayed, message)


@reconciliation_api_bp.route('/reconciliations/<int:reconciliation_id>/reject', methods=['POST'])
@login_required
def reject_reconciliation(reconciliation_id):
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    reconciliation, replayed = reconciliation_service.reject_reconciliation.execute(
        reconciliation_id=reconciliation_id,
        actor=current_user,
        reason=data.get('reason'),
        idempotency_key=key,
    )
    return _reconciliation_response(reconciliation, replayed, 'Reconciliation rejected')
