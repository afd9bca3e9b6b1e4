from decimal import Decimal

from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils
from .mixins import StateMachineMixin, TimestampMixin


class Reconciliation(StateMachineMixin, TimestampMixin, db.Model):
    """Reviewable aggregation of a session's variances awaiting sign-off."""

    __tablename__ = 'reconciliation'

    STATE_ENTITY = 'reconciliation'
    TRANSITIONS = {
        'draft': {'submitted'},
        'submitted': {'approved', 'rejected'},
    }

    id = db.Column(db.Integer, primary_key=True)
    reconciliation_number = db.Column(db.String(32), nullable=False, unique=True)
    session_id = db.Column(db.Integer, db.ForeignKey('count_session.id'), nullable=False, unique=True)
    status = db.Column(db.String(32), nullable=False, default='draft', index=True)

    # SUMMARY
    total_items_counted = db.Column(db.Integer, nullable=False, default=0)
    items_with_variance = db.Column(db.Integer, nullable=False, default=0)
    disputed_items = db.Column(db.Integer, nullable=False, default=0)
    total_variance_units = db.Column(db.Integer, nullable=False, default=0)
    total_absolute_variance_units = db.Column(db.Integer, nullable=False, default=0)
    total_cost_impact = db.Column(db.Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    variance_percentage = db.Column(db.Numeric(9, 2), nullable=False, default=Decimal('0.00'))

    # APPROVAL TRAIL
    submitted_by = db.Column(db.String(64), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    requires_second_approval = db.Column(db.Boolean, nullable=False, default=False)
    first_approved_by = db.Column(db.String(64), nullable=True)
    first_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by = db.Column(db.String(64), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.String(64), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    session = db.relationship('CountSession', backref=db.backref('reconciliation', uselist=False))

    @property
    def awaiting_second_approval(self) -> bool:
        return self.status == 'submitted' and self.requires_second_approval and bool(self.first_approved_by)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'reconciliation_number': self.reconciliation_number,
            'session_id': self.session_id,
            'status': self.status,
            'total_items_counted': self.total_items_counted,
            'items_with_variance': self.items_with_variance,
            'disputed_items': self.disputed_items,
            'total_variance_units': self.total_variance_units,
            'total_cost_impact': str(self.total_cost_impact),
            'variance_percentage': float(self.variance_percentage or 0),
            'submitted_by': self.submitted_by,
            'submitted_at': TimezoneUtils.format_for_api(self.submitted_at),
            'requires_second_approval': self.requires_second_approval,
            'awaiting_second_approval': self.awaiting_second_approval,
            'first_approved_by': self.first_approved_by,
            'approved_by': self.approved_by,
            'approved_at': TimezoneUtils.format_for_api(self.approved_at),
            'rejected_by': self.rejected_by,
            'rejection_reason': self.rejection_reason,
        }

    def __repr__(self):
        return f'<Reconciliation {self.reconciliation_number} {self.status}>'
