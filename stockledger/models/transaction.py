from decimal import Decimal

from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils
from .mixins import StateMachineMixin, TimestampMixin

PAYMENT_METHODS = ('cash', 'credit_card', 'debit_card', 'check', 'gift_card', 'store_credit')


def _money(value):
    return str(value) if value is not None else None


class Transaction(StateMachineMixin, TimestampMixin, db.Model):
    """A point-of-sale transaction; line deltas hit the ledger on completion."""

    __tablename__ = 'pos_transaction'

    STATE_ENTITY = 'transaction'
    TRANSITIONS = {
        'draft': {'processing', 'abandoned'},
        'processing': {'completed', 'failed'},
        'completed': {'voided', 'refunded', 'partially_refunded'},
        'partially_refunded': {'refunded', 'partially_refunded'},
    }

    id = db.Column(db.Integer, primary_key=True)
    transaction_number = db.Column(db.String(64), nullable=False, unique=True)
    idempotency_key = db.Column(db.String(128), nullable=False, unique=True)
    terminal_id = db.Column(db.Integer, db.ForeignKey('terminal.id'), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default='draft', index=True)
    source = db.Column(db.String(16), nullable=False, default='online')  # online, sync

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))

    # Non-quantity metadata, merged last-write-wins across terminals
    customer_note = db.Column(db.Text, nullable=True)
    note_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    failure_reason = db.Column(db.String(64), nullable=True)
    failure_detail = db.Column(db.JSON, nullable=True)

    void_reason = db.Column(db.Text, nullable=True)
    voided_by = db.Column(db.String(64), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    captured_at = db.Column(db.DateTime(timezone=True), nullable=True)  # terminal wall clock
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    terminal = db.relationship('Terminal', backref=db.backref('transactions', lazy='dynamic'))
    items = db.relationship(
        'TransactionItem',
        backref='transaction',
        cascade='all, delete-orphan',
        order_by='TransactionItem.id',
    )
    payments = db.relationship(
        'Payment',
        backref='transaction',
        cascade='all, delete-orphan',
        order_by='Payment.id',
    )

    __table_args__ = (
        db.Index('ix_transaction_terminal_created', 'terminal_id', 'created_at'),
    )

    @property
    def total_units(self) -> int:
        return sum(item.quantity for item in self.items)

    def mark_completed(self):
        self.transition_to('completed')
        self.completed_at = TimezoneUtils.utc_now()

    def mark_voided(self, *, reason: str, actor_id: str | None):
        self.transition_to('voided')
        self.void_reason = reason
        self.voided_by = actor_id
        self.voided_at = TimezoneUtils.utc_now()

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            'id': self.id,
            'transaction_number': self.transaction_number,
            'idempotency_key': self.idempotency_key,
            'terminal_id': self.terminal_id,
            'status': self.status,
            'source': self.source,
            'subtotal': _money(self.subtotal),
            'tax_amount': _money(self.tax_amount),
            'discount_amount': _money(self.discount_amount),
            'total_amount': _money(self.total_amount),
            'customer_note': self.customer_note,
            'failure_reason': self.failure_reason,
            'failure_detail': self.failure_detail,
            'void_reason': self.void_reason,
            'voided_by': self.voided_by,
            'voided_at': TimezoneUtils.format_for_api(self.voided_at),
            'created_by': self.created_by,
            'completed_at': TimezoneUtils.format_for_api(self.completed_at),
        }
        if include_items:
            data['items'] = [item.to_dict() for item in self.items]
            data['payments'] = [payment.to_dict() for payment in self.payments]
        return data

    def __repr__(self):
        return f'<Transaction {self.transaction_number} {self.status}>'


class TransactionItem(db.Model):
    __tablename__ = 'pos_transaction_item'

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('pos_transaction.id'), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    product_snapshot = db.Column(db.JSON, nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    line_total = db.Column(db.Numeric(12, 2), nullable=False)
    refunded_quantity = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship('Product')

    __table_args__ = (
        db.CheckConstraint('quantity > 0', name='ck_transaction_item_quantity_positive'),
    )

    @property
    def refundable_quantity(self) -> int:
        return self.quantity - (self.refunded_quantity or 0)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'product_id': self.product_id,
            'product_snapshot': self.product_snapshot,
            'quantity': self.quantity,
            'unit_price': _money(self.unit_price),
            'discount_amount': _money(self.discount_amount),
            'tax_amount': _money(self.tax_amount),
            'line_total': _money(self.line_total),
            'refunded_quantity': self.refunded_quantity,
        }


class Payment(db.Model):
    __tablename__ = 'pos_payment'

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('pos_transaction.id'), nullable=False, index=True)
    method = db.Column(db.String(32), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    cash_received = db.Column(db.Numeric(12, 2), nullable=True)
    cash_change = db.Column(db.Numeric(12, 2), nullable=True)
    reference = db.Column(db.String(128), nullable=True)  # processor reference, last four digits only
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=TimezoneUtils.utc_now)

    def to_dict(self) -> dict:
        return {
            'method': self.method,
            'amount': _money(self.amount),
            'cash_received': _money(self.cash_received),
            'cash_change': _money(self.cash_change),
            'reference': self.reference,
        }
