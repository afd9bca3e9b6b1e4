from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import func

from ..extensions import db
from ..models import SNAPSHOT_TYPES, InventoryAdjustment, InventorySnapshot, Product
from ..utils.code_generator import generate_snapshot_key
from ..utils.timezone_utils import TimezoneUtils
from .errors import NotFoundError, ValidationError
from .valuation import get_valuation_strategy

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SnapshotDrift:
    product_id: int
    snapshot_quantity: int
    ledger_change: int
    expected_quantity: int
    actual_quantity: int

    @property
    def drift(self) -> int:
        return self.actual_quantity - self.expected_quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "snapshot_quantity": self.snapshot_quantity,
            "ledger_change": self.ledger_change,
            "expected_quantity": self.expected_quantity,
            "actual_quantity": self.actual_quantity,
            "drift": self.drift,
        }


class SnapshotService:
    """Immutable point-in-time copies of stock, independent of live mutation."""

    @staticmethod
    def take_snapshot(
        snapshot_type: str,
        product_ids: Optional[Iterable[int]] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
    ) -> str:
        """Capture quantities for the given products (all active products by default).

        Flushes but does not commit; returns the snapshot key shared by the rows.
        """
        if snapshot_type not in SNAPSHOT_TYPES:
            raise ValidationError.for_field("snapshot_type", f"Unknown snapshot type: {snapshot_type}")

        query = Product.query
        if product_ids is None:
            query = query.filter(Product.is_active.is_(True))
        else:
            ids = sorted({int(pid) for pid in product_ids})
            if not ids:
                raise ValidationError.for_field("product_ids", "Snapshot scope is empty")
            query = query.filter(Product.id.in_(ids))
        products = query.order_by(Product.id).all()

        taken_at = TimezoneUtils.utc_now()
        snapshot_key = generate_snapshot_key(snapshot_type, taken_at)
        valuation = get_valuation_strategy()
        latest_adjustments = dict(
            db.session.query(InventoryAdjustment.product_id, func.max(InventoryAdjustment.id))
            .filter(InventoryAdjustment.product_id.in_([p.id for p in products]))
            .group_by(InventoryAdjustment.product_id)
            .all()
        ) if products else {}

        for product in products:
            db.session.add(InventorySnapshot(
                snapshot_key=snapshot_key,
                snapshot_type=snapshot_type,
                product_id=product.id,
                quantity=product.quantity_in_stock,
                cost_price=product.cost_price,
                value=valuation.value_of(product, product.quantity_in_stock),
                last_adjustment_id=latest_adjustments.get(product.id),
                reference_type=reference_type,
                reference_id=reference_id,
                taken_at=taken_at,
            ))
        db.session.flush()
        logger.info(f"Snapshot {snapshot_key} captured {len(products)} product(s)")
        return snapshot_key

    @staticmethod
    def get_snapshot(snapshot_key: str) -> list[InventorySnapshot]:
        rows = (
            InventorySnapshot.query.filter_by(snapshot_key=snapshot_key)
            .order_by(InventorySnapshot.product_id)
            .all()
        )
        if not rows:
            raise NotFoundError("Snapshot", snapshot_key)
        return rows

    @staticmethod
    def snapshot_drift(snapshot_key: str) -> list[SnapshotDrift]:
        """
        Expected-vs-actual per product: the snapshot quantity plus every ledger
        change recorded after it should equal the live quantity. Non-zero drift
        means stock moved outside the ledger.
        """
        results = []
        for row in SnapshotService.get_snapshot(snapshot_key):
            changes = db.session.query(func.coalesce(func.sum(InventoryAdjustment.quantity_change), 0)).filter(
                InventoryAdjustment.product_id == row.product_id,
                InventoryAdjustment.id > (row.last_adjustment_id or 0),
            ).scalar()
            ledger_change = int(changes or 0)
            results.append(SnapshotDrift(
                product_id=row.product_id,
                snapshot_quantity=row.quantity,
                ledger_change=ledger_change,
                expected_quantity=row.quantity + ledger_change,
                actual_quantity=row.product.quantity_in_stock,
            ))
        return results
