from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy import select, update

from ...extensions import db
from ...models import ADJUSTMENT_TYPES, InventoryAdjustment, Product
from ...utils.code_generator import generate_adjustment_number
from ..errors import ConflictTimeoutError, InsufficientStockError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LedgerContext:
    """Why a delta is being applied, recorded on the resulting adjustment row."""

    adjustment_type: str
    reason: str
    actor_id: Optional[str] = None
    allow_negative: bool = False
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None


def current_quantity(product_id: int) -> int:
    quantity = db.session.execute(
        select(Product.quantity_in_stock).where(Product.id == product_id)
    ).scalar_one_or_none()
    if quantity is None:
        raise NotFoundError("Product", product_id)
    return quantity


def apply_delta(product_id: int, delta: int, context: LedgerContext) -> tuple[int, int]:
    """
    Apply a signed quantity change to one product.

    Returns ``(old_quantity, new_quantity)``. The caller owns the transaction
    boundary; the product update and its adjustment row are flushed together.
    """
    adjustment = post_adjustment(product_id, delta, context)
    return adjustment.old_quantity, adjustment.new_quantity


def post_adjustment(product_id: int, delta: int, context: LedgerContext) -> InventoryAdjustment:
    """
    Single choke point for every stock mutation.

    Reads the product row under a row lock, checks the non-negative invariant,
    then writes the new quantity with a compare-and-swap on ``version``. A lost
    swap is retried with bounded exponential backoff before giving up with
    ConflictTimeoutError.
    """
    _validate_delta(delta, context)

    max_attempts = max(1, int(current_app.config.get("LEDGER_MAX_ATTEMPTS", 5)))
    for attempt in range(1, max_attempts + 1):
        row = db.session.execute(
            select(Product.quantity_in_stock, Product.version, Product.sku)
            .where(Product.id == product_id)
            .with_for_update()
        ).first()
        if row is None:
            raise NotFoundError("Product", product_id)

        old_quantity = row.quantity_in_stock
        new_quantity = old_quantity + delta
        if new_quantity < 0 and not context.allow_negative:
            logger.info(
                f"LEDGER REJECTED: product={product_id} delta={delta} available={old_quantity} "
                f"type={context.adjustment_type}"
            )
            raise InsufficientStockError(
                product_id=product_id,
                requested=-delta,
                available=old_quantity,
                sku=row.sku,
            )

        if _compare_and_swap(product_id, row.version, new_quantity):
            if new_quantity < 0:
                logger.warning(
                    "Administrative correction drove product %s negative (%s -> %s) by actor %s",
                    product_id,
                    old_quantity,
                    new_quantity,
                    context.actor_id,
                )
            adjustment = InventoryAdjustment(
                adjustment_number=generate_adjustment_number(),
                product_id=product_id,
                adjustment_type=context.adjustment_type,
                quantity_change=delta,
                old_quantity=old_quantity,
                new_quantity=new_quantity,
                reason=context.reason.strip(),
                actor_id=context.actor_id,
                reference_type=context.reference_type,
                reference_id=context.reference_id,
            )
            db.session.add(adjustment)
            db.session.flush()
            logger.info(
                f"LEDGER: {adjustment.adjustment_number} product={product_id} "
                f"{old_quantity} -> {new_quantity} ({delta:+d}, {context.adjustment_type})"
            )
            return adjustment

        if attempt < max_attempts:
            delay = _backoff_delay(attempt)
            logger.warning(
                "Ledger compare-and-swap lost for product %s (attempt %s/%s); retrying in %.3fs",
                product_id,
                attempt,
                max_attempts,
                delay,
            )
            time.sleep(delay)

    logger.error("Ledger contention on product %s exhausted %s attempts", product_id, max_attempts)
    raise ConflictTimeoutError(product_id=product_id, attempts=max_attempts)


def _validate_delta(delta, context: LedgerContext) -> None:
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError.for_field("quantity_change", "Quantity change must be a whole number")
    if delta == 0:
        raise ValidationError.for_field("quantity_change", "Quantity change cannot be zero")
    if context.adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError.for_field(
            "adjustment_type", f"Unknown adjustment type: {context.adjustment_type}"
        )
    if not context.reason or not context.reason.strip():
        raise ValidationError.for_field("reason", "A reason is required for every adjustment")


def _compare_and_swap(product_id: int, expected_version: int, new_quantity: int) -> bool:
    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.version == expected_version)
        .values(quantity_in_stock=new_quantity, version=expected_version + 1)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def _backoff_delay(attempt: int) -> float:
    base = float(current_app.config.get("LEDGER_RETRY_BACKOFF_SECONDS", 0.02))
    cap = float(current_app.config.get("LEDGER_RETRY_BACKOFF_CAP_SECONDS", 0.5))
    if base <= 0:
        return 0.0
    delay = min(cap, base * (2 ** (attempt - 1)))
    return delay * (0.5 + random.random() / 2)
