from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils
from .mixins import StateMachineMixin, TimestampMixin

COUNT_TYPES = ('full', 'cycle', 'spot')
COUNT_STATUSES = ('counted', 'needs_recount', 'verified', 'disputed')


def _percent(value):
    return float(value) if value is not None else None


class CountSession(StateMachineMixin, TimestampMixin, db.Model):
    """A physical-count exercise over a scoped set of products."""

    __tablename__ = 'count_session'

    STATE_ENTITY = 'count_session'
    TRANSITIONS = {
        'scheduled': {'in_progress', 'closed'},
        'in_progress': {'pending_review'},
        'pending_review': {'approved', 'rejected'},
        'approved': {'closed'},
        'rejected': {'closed'},
    }

    id = db.Column(db.Integer, primary_key=True)
    session_number = db.Column(db.String(32), nullable=False, unique=True)
    count_type = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(32), nullable=False, default='scheduled', index=True)
    is_blind = db.Column(db.Boolean, nullable=False, default=False)

    scope_category = db.Column(db.String(128), nullable=True)
    scope_location = db.Column(db.String(128), nullable=True)
    scope_product_ids = db.Column(db.JSON, nullable=False, default=list)
    snapshot_key = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    scheduled_for = db.Column(db.DateTime(timezone=True), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    closed_by = db.Column(db.String(64), nullable=True)

    counters = db.relationship('CountSessionCounter', backref='session', cascade='all, delete-orphan')
    counts = db.relationship(
        'InventoryCount',
        backref='session',
        cascade='all, delete-orphan',
        order_by='InventoryCount.id',
    )

    @property
    def counter_ids(self) -> list[str]:
        return [assignment.counter_id for assignment in self.counters]

    @property
    def accepts_counts(self) -> bool:
        return self.status in ('in_progress', 'pending_review')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'session_number': self.session_number,
            'count_type': self.count_type,
            'status': self.status,
            'is_blind': self.is_blind,
            'scope': {
                'category': self.scope_category,
                'location': self.scope_location,
                'product_ids': list(self.scope_product_ids or []),
            },
            'counters': self.counter_ids,
            'scheduled_for': TimezoneUtils.format_for_api(self.scheduled_for),
            'started_at': TimezoneUtils.format_for_api(self.started_at),
            'completed_at': TimezoneUtils.format_for_api(self.completed_at),
            'closed_at': TimezoneUtils.format_for_api(self.closed_at),
            'created_by': self.created_by,
        }

    def __repr__(self):
        return f'<CountSession {self.session_number} {self.status}>'


class CountSessionCounter(db.Model):
    __tablename__ = 'count_session_counter'

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('count_session.id'), nullable=False, index=True)
    counter_id = db.Column(db.String(64), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('session_id', 'counter_id', name='uq_count_session_counter'),
    )


class InventoryCount(db.Model):
    """One product's count within a session, including any recount."""

    __tablename__ = 'inventory_count'

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('count_session.id'), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)

    counted_quantity = db.Column(db.Integer, nullable=False)
    counted_by = db.Column(db.String(64), nullable=False)
    counted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=TimezoneUtils.utc_now)
    system_quantity_at_count_time = db.Column(db.Integer, nullable=False)

    # Count of record (original, accepted recount, or manager-verified)
    variance = db.Column(db.Integer, nullable=False, default=0)
    variance_percentage = db.Column(db.Numeric(9, 2), nullable=False, default=0)
    unit_cost = db.Column(db.Numeric(12, 2), nullable=True)
    cost_impact = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(db.String(32), nullable=False, default='counted', index=True)

    recount_quantity = db.Column(db.Integer, nullable=True)
    recount_by = db.Column(db.String(64), nullable=True)
    recount_at = db.Column(db.DateTime(timezone=True), nullable=True)
    recount_system_quantity = db.Column(db.Integer, nullable=True)

    resolved_quantity = db.Column(db.Integer, nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_note = db.Column(db.Text, nullable=True)

    product = db.relationship('Product')

    __table_args__ = (
        db.UniqueConstraint('session_id', 'product_id', name='uq_inventory_count_session_product'),
        db.CheckConstraint('counted_quantity >= 0', name='ck_inventory_count_nonnegative'),
    )

    @property
    def accepted_quantity(self) -> int:
        """Quantity of record after recount or manual verification."""
        if self.resolved_quantity is not None:
            return self.resolved_quantity
        if self.status == 'verified' and self.recount_quantity is not None:
            return self.recount_quantity
        return self.counted_quantity

    @property
    def is_open(self) -> bool:
        return self.status in ('needs_recount', 'disputed')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'product_id': self.product_id,
            'counted_quantity': self.counted_quantity,
            'counted_by': self.counted_by,
            'counted_at': TimezoneUtils.format_for_api(self.counted_at),
            'system_quantity_at_count_time': self.system_quantity_at_count_time,
            'variance': self.variance,
            'variance_percentage': _percent(self.variance_percentage),
            'unit_cost': str(self.unit_cost) if self.unit_cost is not None else None,
            'cost_impact': str(self.cost_impact) if self.cost_impact is not None else None,
            'status': self.status,
            'recount_quantity': self.recount_quantity,
            'recount_by': self.recount_by,
            'recount_system_quantity': self.recount_system_quantity,
            'accepted_quantity': self.accepted_quantity,
            'resolved_by': self.resolved_by,
            'resolution_note': self.resolution_note,
        }

    def __repr__(self):
        return f'<InventoryCount session={self.session_id} product={self.product_id} {self.status}>'
