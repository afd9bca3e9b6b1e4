from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils


class IdempotencyRecord(db.Model):
    """Remembers which entity an idempotency key produced."""

    __tablename__ = 'idempotency_record'

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(128), nullable=False, unique=True)
    operation = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    actor_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=TimezoneUtils.utc_now)

    def __repr__(self):
        return f'<IdempotencyRecord {self.operation} {self.idempotency_key}>'
