import logging

from flask import Blueprint, request
from flask_login import current_user, login_required

from ...authz import manager_roles, require_role
from ...services.errors import ValidationError
from ...services.inventory_ledger import (
    create_adjustment,
    current_quantity,
    get_adjustment,
    category_summary,
    inventory_valuation,
    list_adjustments,
    low_stock_products,
    out_of_stock_products,
    shrinkage_summary,
    validate_ledger_consistency,
)
from ...utils.api_responses import APIResponse, require_idempotency_key
from ...utils.timezone_utils import TimezoneUtils

logger = logging.getLogger(__name__)

inventory_api_bp = Blueprint('inventory_api', __name__)


def _query_timestamp(name):
    try:
        return TimezoneUtils.parse_iso(request.args.get(name))
    except ValueError as exc:
        raise ValidationError.for_field(name, str(exc)) from None


@inventory_api_bp.route('/adjustments', methods=['POST'])
@login_required
def create_manual_adjustment():
    """Record damage, theft, found stock, a correction or an initial load."""
    data = APIResponse.handle_request_content()
    key = require_idempotency_key(data)
    adjustment, replayed = create_adjustment.execute(
        product_id=data.get('product_id'),
        adjustment_type=data.get('adjustment_type'),
        quantity_change=data.get('quantity_change'),
        reason=data.get('reason'),
        actor=current_user,
        allow_negative=bool(data.get('allow_negative', False)),
        idempotency_key=key,
    )
    if replayed:
        return APIResponse.success(adjustment.to_dict(), 'Already processed', 200, replayed=True)
    return APIResponse.success(adjustment.to_dict(), 'Adjustment recorded', 201, replayed=False)


@inventory_api_bp.route('/adjustments', methods=['GET'])
@login_required
def adjustment_history():
    page = list_adjustments(
        product_id=request.args.get('product_id', type=int),
        adjustment_type=request.args.get('adjustment_type'),
        actor_id=request.args.get('actor_id'),
        start=_query_timestamp('start'),
        end=_query_timestamp('end'),
        page=request.args.get('page', 1, type=int),
        per_page=request.args.get('per_page', 20, type=int),
    )
    return APIResponse.success(
        [adjustment.to_dict() for adjustment in page.items],
        pagination={
            'page': page.page,
            'per_page': page.per_page,
            'total': page.total,
            'pages': page.pages,
        },
    )


@inventory_api_bp.route('/adjustments/<int:adjustment_id>', methods=['GET'])
@login_required
def adjustment_detail(adjustment_id):
    return APIResponse.success(get_adjustment(adjustment_id).to_dict())


@inventory_api_bp.route('/products/<int:product_id>/quantity', methods=['GET'])
@login_required
def product_quantity(product_id):
    return APIResponse.success({'product_id': product_id, 'quantity': current_quantity(product_id)})


@inventory_api_bp.route('/reports/shrinkage', methods=['GET'])
@login_required
def shrinkage_report():
    require_role(current_user, manager_roles(), 'view shrinkage reports')
    return APIResponse.success(shrinkage_summary(since=_query_timestamp('since')))


@inventory_api_bp.route('/reports/low-stock', methods=['GET'])
@login_required
def low_stock_report():
    return APIResponse.success(low_stock_products(category=request.args.get('category')))


@inventory_api_bp.route('/reports/out-of-stock', methods=['GET'])
@login_required
def out_of_stock_report():
    return APIResponse.success(out_of_stock_products(category=request.args.get('category')))


@inventory_api_bp.route('/reports/valuation', methods=['GET'])
@login_required
def valuation_report():
    require_role(current_user, manager_roles(), 'view inventory valuation')
    try:
        valuation = inventory_valuation(method=request.args.get('method') or None)
    except ValueError as exc:
        raise ValidationError.for_field('method', str(exc)) from None
    return APIResponse.success(valuation)


@inventory_api_bp.route('/reports/categories', methods=['GET'])
@login_required
def category_report():
    require_role(current_user, manager_roles(), 'view category summaries')
    return APIResponse.success(category_summary())


@inventory_api_bp.route('/ledger/verify', methods=['GET'])
@login_required
def verify_ledger():
    require_role(current_user, manager_roles(), 'verify the ledger')
    issues = validate_ledger_consistency(request.args.get('product_id', type=int))
    return APIResponse.success(
        [issue.to_dict() for issue in issues],
        'Ledger consistent' if not issues else f'{len(issues)} issue(s) found',
        consistent=not issues,
    )
