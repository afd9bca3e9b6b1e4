import logging

from flask import Blueprint
from flask_login import current_user, login_required

from ...services.transaction_service import TransactionProcessor
from ...utils.api_responses import APIResponse, require_idempotency_key

logger = logging.getLogger(__name__)

transaction_api_bp = Blueprint('transaction_api', __name__)


def _transaction_response(result, created_message):
    if result.replayed:
        return APIResponse.success(result.transaction.to_dict(), 'Already processed', 200, replayed=True)
    return APIResponse.success(result.transaction.to_dict(), created_message, 201, replayed=False)


@transaction_api_bp.route('/transactions', methods=['POST'])
@login_required
def create_transaction():
    """Record a completed sale; stock is deducted for every line or none."""
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    result = TransactionProcessor.create_transaction(
        terminal_id=data.get('terminal_id'),
        items=data.get('items'),
        idempotency_key=key,
        actor=current_user,
        payments=data.get('payments'),
        transaction_number=data.get('transaction_number'),
        note=data.get('note'),
        captured_at=data.get('captured_at'),
    )
    return _transaction_response(result, 'Transaction completed')


@transaction_api_bp.route('/transactions/<int:transaction_id>', methods=['GET'])
@login_required
def get_transaction(transaction_id):
    transaction = TransactionProcessor.get_transaction(transaction_id)
    return APIResponse.success(transaction.to_dict())


@transaction_api_bp.route('/transactions/<int:transaction_id>/void', methods=['POST'])
@login_required
def void_transaction(transaction_id):
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    result = TransactionProcessor.void_transaction(
        transaction_id, data.get('reason'), actor=current_user, idempotency_key=key
    )
    return _transaction_response(result, 'Transaction voided')


@transaction_api_bp.route('/transactions/<int:transaction_id>/refund', methods=['POST'])
@login_required
def refund_transaction(transaction_id):
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    result = TransactionProcessor.refund_transaction(
        transaction_id,
        data.get('reason'),
        actor=current_user,
        idempotency_key=key,
        items=data.get('items'),
    )
    return _transaction_response(result, 'Transaction refunded')


@transaction_api_bp.route('/transactions/<int:transaction_id>/note', methods=['PUT'])
@login_required
def update_note(transaction_id):
    data = APIResponse.handle_request_content()
    transaction, applied = TransactionProcessor.update_transaction_note(
        transaction_id, data.get('note'), data.get('updated_at')
    )
    message = 'Note updated' if applied else 'A newer note is already stored'
    return APIResponse.success(transaction.to_dict(), message, applied=applied)


@transaction_api_bp.route('/transactions/drafts', methods=['POST'])
@login_required
def open_draft():
    """Price a basket without touching stock; complete it once paid."""
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    result = TransactionProcessor.open_draft(
        terminal_id=data.get('terminal_id'),
        items=data.get('items'),
        idempotency_key=key,
        actor=current_user,
        transaction_number=data.get('transaction_number'),
        note=data.get('note'),
    )
    return _transaction_response(result, 'Draft opened')


@transaction_api_bp.route('/transactions/<int:transaction_id>/complete', methods=['POST'])
@login_required
def complete_transaction(transaction_id):
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    result = TransactionProcessor.complete_transaction(
        transaction_id, actor=current_user, idempotency_key=key, payments=data.get('payments')
    )
    return _transaction_response(result, 'Transaction completed')


@transaction_api_bp.route('/transactions/<int:transaction_id>/abandon', methods=['POST'])
@login_required
def abandon_draft(transaction_id):
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    result = TransactionProcessor.abandon_draft(transaction_id, actor=current_user, idempotency_key=key)
    return APIResponse.success(
        result.transaction.to_dict(), 'Draft abandoned', replayed=result.replayed
    )
