"""Read-only views over the adjustment log and stock levels for reporting collaborators."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func

from ...extensions import db
from ...models import LOSS_ADJUSTMENT_TYPES, InventoryAdjustment, Product, Transaction, TransactionItem
from ...utils.timezone_utils import TimezoneUtils
from ..valuation import get_valuation_strategy, quantize_money

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200


def list_adjustments(
    *,
    product_id: Optional[int] = None,
    adjustment_type: Optional[str] = None,
    actor_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    per_page: int = DEFAULT_PAGE_SIZE,
):
    """Newest-first, paginated adjustment history."""
    query = InventoryAdjustment.query
    if product_id is not None:
        query = query.filter(InventoryAdjustment.product_id == product_id)
    if adjustment_type:
        query = query.filter(InventoryAdjustment.adjustment_type == adjustment_type)
    if actor_id:
        query = query.filter(InventoryAdjustment.actor_id == actor_id)
    if start is not None:
        query = query.filter(InventoryAdjustment.created_at >= start)
    if end is not None:
        query = query.filter(InventoryAdjustment.created_at <= end)

    per_page = max(1, min(int(per_page or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE))
    return query.order_by(InventoryAdjustment.id.desc()).paginate(
        page=max(1, int(page or 1)),
        per_page=per_page,
        error_out=False,
    )


def shrinkage_summary(since: Optional[datetime] = None) -> list[dict]:
    """
    Units lost per product: negative damage/theft adjustments plus negative
    reconciliation variances. Corrections are excluded because they fix
    counting or entry errors rather than physical loss.
    """
    loss_types = (*LOSS_ADJUSTMENT_TYPES, 'reconciliation')
    query = (
        db.session.query(
            InventoryAdjustment.product_id,
            InventoryAdjustment.adjustment_type,
            func.sum(InventoryAdjustment.quantity_change),
        )
        .filter(
            InventoryAdjustment.adjustment_type.in_(loss_types),
            InventoryAdjustment.quantity_change < 0,
        )
        .group_by(InventoryAdjustment.product_id, InventoryAdjustment.adjustment_type)
    )
    if since is not None:
        query = query.filter(InventoryAdjustment.created_at >= TimezoneUtils.ensure_timezone_aware(since))

    by_product: dict[int, dict] = {}
    for product_id, adjustment_type, units in query.all():
        entry = by_product.setdefault(product_id, {
            'product_id': product_id,
            'units_lost': 0,
            'by_type': {},
        })
        entry['units_lost'] += -int(units or 0)
        entry['by_type'][adjustment_type] = -int(units or 0)

    if by_product:
        products = Product.query.filter(Product.id.in_(list(by_product))).all()
        for product in products:
            entry = by_product[product.id]
            entry['sku'] = product.sku
            unit_cost = product.cost_price if product.cost_price is not None else product.base_price
            entry['cost'] = str((unit_cost or 0) * entry['units_lost'])

    return sorted(by_product.values(), key=lambda entry: entry['units_lost'], reverse=True)


# Items sold before a product ran dry; voided sales never left the shelf
SOLD_STATUSES = ('completed', 'partially_refunded', 'refunded')
UNCATEGORIZED = 'uncategorized'


def _active_products(category: Optional[str] = None):
    query = Product.query.filter(Product.is_active.is_(True))
    if category:
        query = query.filter(Product.category == category)
    return query


def low_stock_products(category: Optional[str] = None) -> list[dict]:
    """Active products at or below their reorder level, emptiest first."""
    strategy = get_valuation_strategy()
    products = (
        _active_products(category)
        .filter(Product.quantity_in_stock <= Product.reorder_level)
        .order_by(Product.quantity_in_stock.asc(), Product.name.asc())
        .all()
    )
    return [
        {
            'product_id': product.id,
            'sku': product.sku,
            'name': product.name,
            'category': product.category,
            'quantity_in_stock': product.quantity_in_stock,
            'reorder_level': product.reorder_level,
            'reorder_quantity': product.reorder_quantity,
            'stock_value': str(strategy.value_of(product, max(product.quantity_in_stock, 0))),
        }
        for product in products
    ]


def out_of_stock_products(category: Optional[str] = None) -> list[dict]:
    """Active products with nothing on hand, with the time of their last sale."""
    last_sale = (
        db.session.query(TransactionItem.product_id, func.max(Transaction.completed_at).label('last_sale_at'))
        .join(Transaction, Transaction.id == TransactionItem.transaction_id)
        .filter(Transaction.status.in_(SOLD_STATUSES))
        .group_by(TransactionItem.product_id)
        .subquery()
    )
    rows = (
        db.session.query(Product, last_sale.c.last_sale_at)
        .outerjoin(last_sale, last_sale.c.product_id == Product.id)
        .filter(Product.is_active.is_(True), Product.quantity_in_stock <= 0)
    )
    if category:
        rows = rows.filter(Product.category == category)
    return [
        {
            'product_id': product.id,
            'sku': product.sku,
            'name': product.name,
            'category': product.category,
            'quantity_in_stock': product.quantity_in_stock,
            'reorder_quantity': product.reorder_quantity,
            'last_sale_at': TimezoneUtils.format_for_api(last_sale_at),
        }
        for product, last_sale_at in rows.order_by(Product.name.asc()).all()
    ]


def inventory_valuation(method: Optional[str] = None) -> dict:
    """
    Value of stock on hand under the configured valuation method (or
    ``method``), in total and per category. Negative balances count as zero
    units: they are a consistency problem, not a liability.
    """
    strategy = get_valuation_strategy(method)
    total_value = Decimal('0.00')
    total_units = 0
    by_category: dict[str, dict] = {}

    for product in _active_products().order_by(Product.id).all():
        units = max(product.quantity_in_stock or 0, 0)
        value = strategy.value_of(product, units)
        total_value += value
        total_units += units
        entry = by_category.setdefault(product.category or UNCATEGORIZED, {
            'category': product.category or UNCATEGORIZED,
            'product_count': 0,
            'total_quantity': 0,
            'total_value': Decimal('0.00'),
        })
        entry['product_count'] += 1
        entry['total_quantity'] += units
        entry['total_value'] += value

    categories = sorted(by_category.values(), key=lambda entry: entry['total_value'], reverse=True)
    for entry in categories:
        entry['total_value'] = str(quantize_money(entry['total_value']))
    return {
        'method': strategy.name,
        'total_value': str(quantize_money(total_value)),
        'total_units': total_units,
        'by_category': categories,
    }


def category_summary() -> list[dict]:
    """Per-category stock counts and value, with low and out-of-stock tallies."""
    strategy = get_valuation_strategy()
    by_category: dict[str, dict] = {}
    for product in _active_products().all():
        units = max(product.quantity_in_stock or 0, 0)
        entry = by_category.setdefault(product.category or UNCATEGORIZED, {
            'category': product.category or UNCATEGORIZED,
            'product_count': 0,
            'total_quantity': 0,
            'total_value': Decimal('0.00'),
            'low_stock_count': 0,
            'out_of_stock_count': 0,
        })
        entry['product_count'] += 1
        entry['total_quantity'] += units
        entry['total_value'] += strategy.value_of(product, units)
        entry['low_stock_count'] += int(product.is_low_stock)
        entry['out_of_stock_count'] += int(product.is_out_of_stock)

    summary = sorted(by_category.values(), key=lambda entry: entry['total_value'], reverse=True)
    for entry in summary:
        entry['average_value_per_item'] = str(quantize_money(entry['total_value'] / entry['product_count']))
        entry['total_value'] = str(quantize_money(entry['total_value']))
    return summary
