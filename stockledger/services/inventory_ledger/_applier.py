import logging

from ...authz import Actor
from ...models import MANUAL_ADJUSTMENT_TYPES, InventoryAdjustment, Product
from ...extensions import db
from ..errors import NotFoundError, PermissionDeniedError, ValidationError
from ..idempotency import idempotent_operation
from ._core import LedgerContext, post_adjustment

logger = logging.getLogger(__name__)

# Required sign of the quantity change per manual adjustment type (None = either)
ADJUSTMENT_SIGN_RULES = {
    'damage': -1,
    'theft': -1,
    'found': 1,
    'initial': 1,
    'correction': None,
}


@idempotent_operation("adjustment.create")
def create_adjustment(product_id, adjustment_type, quantity_change, reason, actor, allow_negative=False):
    """
    Record a manual stock adjustment (damage, theft, found, correction, initial).

    sale/void/refund/reconciliation adjustments are produced only by the
    transaction processor and the reconciliation workflow.
    """
    actor = Actor.coerce(actor)
    errors = {}

    if adjustment_type not in MANUAL_ADJUSTMENT_TYPES:
        errors['adjustment_type'] = [
            f"Adjustment type must be one of: {', '.join(MANUAL_ADJUSTMENT_TYPES)}"
        ]
    if isinstance(quantity_change, bool) or not isinstance(quantity_change, int):
        errors['quantity_change'] = ["Quantity change must be a whole number"]
    elif quantity_change == 0:
        errors['quantity_change'] = ["Quantity change cannot be zero"]
    else:
        required_sign = ADJUSTMENT_SIGN_RULES.get(adjustment_type)
        if required_sign is not None and (quantity_change > 0) != (required_sign > 0):
            direction = "negative" if required_sign < 0 else "positive"
            errors['quantity_change'] = [f"{adjustment_type} adjustments must be {direction}"]
    if not reason or not str(reason).strip():
        errors['reason'] = ["Reason is required"]
    if actor is None:
        errors['actor'] = ["An actor is required"]
    if errors:
        raise ValidationError("Invalid adjustment", errors)

    if allow_negative and not (adjustment_type == 'correction' and actor.is_admin):
        raise PermissionDeniedError(
            "Only administrators may apply corrections that take stock below zero",
            actor_id=actor.id,
            required_roles=("admin",),
        )

    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)

    adjustment = post_adjustment(
        product.id,
        quantity_change,
        LedgerContext(
            adjustment_type=adjustment_type,
            reason=str(reason),
            actor_id=actor.id,
            allow_negative=bool(allow_negative),
        ),
    )
    logger.info(f"Manual {adjustment_type} adjustment {adjustment.adjustment_number} by {actor.id}")
    return adjustment


def get_adjustment(adjustment_id) -> InventoryAdjustment:
    adjustment = db.session.get(InventoryAdjustment, adjustment_id)
    if adjustment is None:
        raise NotFoundError("Adjustment", adjustment_id)
    return adjustment
