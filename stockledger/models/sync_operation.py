from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils

SYNC_OPERATION_TYPES = ('sale', 'void', 'refund', 'adjustment', 'count', 'note')


class SyncOperation(db.Model):
    """A terminal-queued operation as received and settled by the sync resolver."""

    __tablename__ = 'sync_operation'

    id = db.Column(db.Integer, primary_key=True)
    terminal_id = db.Column(db.Integer, db.ForeignKey('terminal.id'), nullable=False, index=True)
    local_sequence = db.Column(db.Integer, nullable=False)
    idempotency_key = db.Column(db.String(128), nullable=False, index=True)
    operation_type = db.Column(db.String(32), nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    captured_at = db.Column(db.DateTime(timezone=True), nullable=True)  # terminal wall clock
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=TimezoneUtils.utc_now)

    status = db.Column(db.String(16), nullable=False)  # applied, duplicate, rejected, superseded
    result = db.Column(db.JSON, nullable=True)
    error_type = db.Column(db.String(64), nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    terminal = db.relationship('Terminal', backref=db.backref('sync_operations', lazy='dynamic'))

    __table_args__ = (
        db.UniqueConstraint('terminal_id', 'local_sequence', name='uq_sync_operation_terminal_sequence'),
    )

    def to_result(self) -> dict:
        return {
            'local_sequence': self.local_sequence,
            'idempotency_key': self.idempotency_key,
            'operation_type': self.operation_type,
            'status': self.status,
            'result': self.result,
            'error': (
                {'error_type': self.error_type, 'message': self.error_message}
                if self.error_type else None
            ),
        }
