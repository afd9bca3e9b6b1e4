from sqlalchemy import event

from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils

ADJUSTMENT_TYPES = (
    'damage',
    'theft',
    'found',
    'correction',
    'initial',
    'sale',
    'void',
    'refund',
    'reconciliation',
)
MANUAL_ADJUSTMENT_TYPES = ('damage', 'theft', 'found', 'correction', 'initial')
LOSS_ADJUSTMENT_TYPES = ('damage', 'theft')


class ImmutableAuditRecordError(RuntimeError):
    """Raised when code attempts to modify or delete an inventory adjustment."""


class InventoryAdjustment(db.Model):
    """Append-only audit row written by the ledger for every quantity change."""

    __tablename__ = 'inventory_adjustment'

    id = db.Column(db.Integer, primary_key=True)
    adjustment_number = db.Column(db.String(32), nullable=False, unique=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    adjustment_type = db.Column(db.String(32), nullable=False, index=True)

    quantity_change = db.Column(db.Integer, nullable=False)
    old_quantity = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.Text, nullable=False)
    actor_id = db.Column(db.String(64), nullable=True, index=True)
    reference_type = db.Column(db.String(32), nullable=True)  # transaction, reconciliation
    reference_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=TimezoneUtils.utc_now, index=True)

    product = db.relationship('Product', backref=db.backref('adjustments', lazy='dynamic'))

    __table_args__ = (
        db.CheckConstraint('quantity_change <> 0', name='ck_adjustment_nonzero_change'),
        db.CheckConstraint('new_quantity = old_quantity + quantity_change', name='ck_adjustment_fold'),
        db.Index('ix_adjustment_product_id_id', 'product_id', 'id'),
        db.Index('ix_adjustment_reference', 'reference_type', 'reference_id'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'adjustment_number': self.adjustment_number,
            'product_id': self.product_id,
            'adjustment_type': self.adjustment_type,
            'quantity_change': self.quantity_change,
            'old_quantity': self.old_quantity,
            'new_quantity': self.new_quantity,
            'reason': self.reason,
            'actor_id': self.actor_id,
            'reference_type': self.reference_type,
            'reference_id': self.reference_id,
            'created_at': TimezoneUtils.format_for_api(self.created_at),
        }

    def __repr__(self):
        return f'<InventoryAdjustment {self.adjustment_number} {self.quantity_change:+d}>'


@event.listens_for(InventoryAdjustment, "before_update")
def _block_adjustment_update(mapper, connection, target):
    raise ImmutableAuditRecordError(f"Inventory adjustment {target.adjustment_number} is immutable")


@event.listens_for(InventoryAdjustment, "before_delete")
def _block_adjustment_delete(mapper, connection, target):
    raise ImmutableAuditRecordError(f"Inventory adjustment {target.adjustment_number} cannot be deleted")
