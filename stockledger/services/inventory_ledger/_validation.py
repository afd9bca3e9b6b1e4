import logging
from dataclasses import dataclass

from ...models import InventoryAdjustment, Product

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LedgerIssue:
    product_id: int
    adjustment_number: str | None
    message: str

    def to_dict(self) -> dict:
        return {
            'product_id': self.product_id,
            'adjustment_number': self.adjustment_number,
            'message': self.message,
        }


def validate_ledger_consistency(product_id=None) -> list[LedgerIssue]:
    """
    Fold the adjustment log and compare it with live stock.

    For each product: every row satisfies new = old + change, each row's old
    quantity continues from the previous row's new quantity, and the product's
    current quantity equals the newest row's new quantity (or zero when the
    product has no history).
    """
    query = Product.query.order_by(Product.id)
    if product_id is not None:
        query = query.filter(Product.id == product_id)

    issues = []
    for product in query.all():
        issues.extend(_validate_product(product))

    if issues:
        logger.warning(f"Ledger validation found {len(issues)} issue(s)")
    return issues


def _validate_product(product) -> list[LedgerIssue]:
    issues = []
    running = 0
    rows = (
        InventoryAdjustment.query.filter_by(product_id=product.id)
        .order_by(InventoryAdjustment.id)
        .all()
    )
    for row in rows:
        if row.new_quantity != row.old_quantity + row.quantity_change:
            issues.append(LedgerIssue(
                product.id,
                row.adjustment_number,
                f"new_quantity {row.new_quantity} != {row.old_quantity} + {row.quantity_change}",
            ))
        if row.old_quantity != running:
            issues.append(LedgerIssue(
                product.id,
                row.adjustment_number,
                f"old_quantity {row.old_quantity} does not continue from {running}",
            ))
        running = row.new_quantity

    if product.quantity_in_stock != running:
        issues.append(LedgerIssue(
            product.id,
            rows[-1].adjustment_number if rows else None,
            f"quantity_in_stock {product.quantity_in_stock} != ledger fold {running}",
        ))
    return issues
