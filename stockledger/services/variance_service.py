"""Variance detection and the recount workflow for physical counts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from flask import current_app

from ..authz import manager_roles, require_role
from ..extensions import db
from ..models import CountSession, InventoryCount, Product
from ..utils.timezone_utils import TimezoneUtils
from .errors import InvalidStateTransitionError, NotFoundError, ValidationError
from .idempotency import idempotent_operation
from .inventory_ledger import current_quantity
from .valuation import ValuationStrategy, get_valuation_strategy, quantize_money

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def _relative_percent(variance: int, system_quantity: int) -> Decimal:
    return (Decimal(abs(variance)) * HUNDRED / Decimal(max(system_quantity, 1))).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )


@dataclass(slots=True)
class VariancePolicy:
    threshold_percent: Decimal = Decimal("5")
    recount_tolerance_percent: Decimal = Decimal("5")

    @classmethod
    def from_config(cls) -> "VariancePolicy":
        config = current_app.config
        return cls(
            threshold_percent=Decimal(str(config.get("VARIANCE_THRESHOLD_PERCENT", 5))),
            recount_tolerance_percent=Decimal(str(config.get("RECOUNT_TOLERANCE_PERCENT", 5))),
        )

    def exceeds_threshold(self, variance: int, system_quantity: int) -> bool:
        return Decimal(abs(variance)) * HUNDRED > self.threshold_percent * max(system_quantity, 1)

    def recount_agrees(self, original_variance: int, recount_variance: int, system_quantity: int) -> bool:
        disagreement = Decimal(abs(recount_variance - original_variance))
        return disagreement * HUNDRED <= self.recount_tolerance_percent * max(system_quantity, 1)


@dataclass(slots=True)
class VarianceSummary:
    items_counted: int
    items_with_variance: int
    pending_recount: int
    disputed: int
    total_variance_units: int
    total_absolute_variance_units: int
    total_system_units: int
    total_cost_impact: Decimal

    @property
    def variance_percentage(self) -> Decimal:
        return _relative_percent(self.total_absolute_variance_units, self.total_system_units)

    def to_dict(self) -> dict:
        return {
            "items_counted": self.items_counted,
            "items_with_variance": self.items_with_variance,
            "pending_recount": self.pending_recount,
            "disputed": self.disputed,
            "total_variance_units": self.total_variance_units,
            "total_absolute_variance_units": self.total_absolute_variance_units,
            "total_cost_impact": str(self.total_cost_impact),
            "variance_percentage": float(self.variance_percentage),
        }


class VarianceDetector:
    """Compares counted and system quantities and drives recounts."""

    def __init__(self, policy: Optional[VariancePolicy] = None, valuation: Optional[ValuationStrategy] = None):
        self.policy = policy or VariancePolicy.from_config()
        self.valuation = valuation or get_valuation_strategy()

    def evaluate(self, count: InventoryCount, product: Product) -> InventoryCount:
        """Score a first count and flag it for recount when it breaches the threshold."""
        variance = count.counted_quantity - count.system_quantity_at_count_time
        self._record_variance(count, product, variance, count.system_quantity_at_count_time)
        if self.policy.exceeds_threshold(variance, count.system_quantity_at_count_time):
            count.status = "needs_recount"
            logger.info(
                f"Count for product {product.id} in session {count.session_id} flagged for recount "
                f"(variance {variance:+d}, {count.variance_percentage}%)"
            )
        else:
            count.status = "counted"
        return count

    def apply_recount(
        self,
        count: InventoryCount,
        product: Product,
        recount_quantity: int,
        counter_id: str,
        system_quantity: int,
    ) -> InventoryCount:
        """
        Record a second count by a different counter.

        When the recount's variance is within tolerance of the original, the
        recount becomes the count of record. Otherwise the item is disputed and
        waits for manager verification; neither count is picked automatically.
        """
        if count.status != "needs_recount":
            raise InvalidStateTransitionError(
                entity="inventory_count",
                current=count.status,
                target="recount",
                reason="Only counts flagged for recount accept a second count.",
            )
        if counter_id == count.counted_by:
            raise ValidationError.for_field("counter", "A recount must be performed by a different counter")

        count.recount_quantity = recount_quantity
        count.recount_by = counter_id
        count.recount_at = TimezoneUtils.utc_now()
        count.recount_system_quantity = system_quantity

        original_variance = count.counted_quantity - count.system_quantity_at_count_time
        recount_variance = recount_quantity - system_quantity
        if self.policy.recount_agrees(original_variance, recount_variance, count.system_quantity_at_count_time):
            count.status = "verified"
            self._record_variance(count, product, recount_variance, system_quantity)
            logger.info(
                f"Recount accepted for product {product.id} in session {count.session_id}: "
                f"{count.counted_quantity} -> {recount_quantity}"
            )
        else:
            count.status = "disputed"
            logger.warning(
                "Recount disputed for product %s in session %s: original variance %+d, recount variance %+d",
                product.id,
                count.session_id,
                original_variance,
                recount_variance,
            )
        return count

    def resolve_dispute(
        self, count_id: int, verified_quantity: int, actor, idempotency_key: str, note: Optional[str] = None
    ) -> InventoryCount:
        """
        Settle a disputed (or recount-pending) item from a manager's physical
        verification.

        Resolution only records the variance; stock moves when a reconciliation
        is approved. Counts of a rejected session can still be settled so the
        session can close.
        """
        return _resolve_dispute(
            self, count_id, verified_quantity, note, actor=actor, idempotency_key=idempotency_key
        )

    def session_variance_summary(self, session: CountSession) -> VarianceSummary:
        counts = list(session.counts)
        total_cost = sum((Decimal(c.cost_impact or 0) for c in counts), Decimal("0.00"))
        return VarianceSummary(
            items_counted=len(counts),
            items_with_variance=sum(1 for c in counts if c.variance),
            pending_recount=sum(1 for c in counts if c.status == "needs_recount"),
            disputed=sum(1 for c in counts if c.status == "disputed"),
            total_variance_units=sum(c.variance for c in counts),
            total_absolute_variance_units=sum(abs(c.variance) for c in counts),
            total_system_units=sum(c.system_quantity_at_count_time for c in counts),
            total_cost_impact=quantize_money(total_cost),
        )

    def _record_variance(self, count: InventoryCount, product: Product, variance: int, system_quantity: int) -> None:
        unit_cost = self.valuation.unit_cost(product)
        count.variance = variance
        count.variance_percentage = _relative_percent(variance, system_quantity)
        count.unit_cost = quantize_money(unit_cost)
        count.cost_impact = quantize_money(unit_cost * variance)


@idempotent_operation("count.resolve")
def _resolve_dispute(detector, count_id, verified_quantity, note=None, actor=None):
    actor = require_role(actor, manager_roles(), "resolve count disputes")
    if isinstance(verified_quantity, bool) or not isinstance(verified_quantity, int) or verified_quantity < 0:
        raise ValidationError.for_field("verified_quantity", "Verified quantity must be a non-negative whole number")

    count = (
        InventoryCount.query.filter_by(id=count_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if count is None:
        raise NotFoundError("Count", count_id)
    session = db.session.get(CountSession, count.session_id)
    if session.status in ("approved", "closed"):
        raise InvalidStateTransitionError(
            entity="count_session",
            current=session.status,
            target="resolve_dispute",
            reason="Counts of an approved or closed session are frozen.",
        )
    if not count.is_open:
        raise InvalidStateTransitionError(
            entity="inventory_count",
            current=count.status,
            target="verified",
            reason="Only disputed or recount-pending counts can be resolved.",
        )

    system_quantity = current_quantity(count.product_id)
    count.resolved_quantity = verified_quantity
    count.resolved_by = actor.id
    count.resolved_at = TimezoneUtils.utc_now()
    count.resolution_note = note
    count.status = "verified"
    detector._record_variance(count, count.product, verified_quantity - system_quantity, system_quantity)

    reconciliation = session.reconciliation
    if reconciliation is not None and reconciliation.status in ("draft", "submitted"):
        from .reconciliation_service import ReconciliationWorkflow

        ReconciliationWorkflow.refresh_summary(reconciliation, detector=detector)
    db.session.flush()

    logger.info(f"Dispute on count {count.id} resolved by {actor.id} at {verified_quantity}")
    return count
