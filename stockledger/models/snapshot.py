from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils

SNAPSHOT_TYPES = ('count_session', 'end_of_day', 'daily', 'weekly', 'monthly', 'transaction', 'reconciliation')


class InventorySnapshot(db.Model):
    """Point-in-time quantity for one product; rows sharing ``snapshot_key`` form one snapshot."""

    __tablename__ = 'inventory_snapshot'

    id = db.Column(db.Integer, primary_key=True)
    snapshot_key = db.Column(db.String(64), nullable=False, index=True)
    snapshot_type = db.Column(db.String(32), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    cost_price = db.Column(db.Numeric(12, 2), nullable=True)
    value = db.Column(db.Numeric(14, 2), nullable=True)
    last_adjustment_id = db.Column(db.Integer, nullable=True)  # ledger position at capture time
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    taken_at = db.Column(db.DateTime(timezone=True), nullable=False, default=TimezoneUtils.utc_now, index=True)

    product = db.relationship('Product')

    __table_args__ = (
        db.UniqueConstraint('snapshot_key', 'product_id', name='uq_snapshot_key_product'),
    )

    def to_dict(self) -> dict:
        return {
            'snapshot_key': self.snapshot_key,
            'snapshot_type': self.snapshot_type,
            'product_id': self.product_id,
            'quantity': self.quantity,
            'cost_price': str(self.cost_price) if self.cost_price is not None else None,
            'value': str(self.value) if self.value is not None else None,
            'taken_at': TimezoneUtils.format_for_api(self.taken_at),
        }
