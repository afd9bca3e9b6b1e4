from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils
from .mixins import TimestampMixin


class Terminal(TimestampMixin, db.Model):
    """Point-of-sale register that may operate offline and sync later."""

    __tablename__ = 'terminal'

    id = db.Column(db.Integer, primary_key=True)
    terminal_number = db.Column(db.String(32), nullable=False, unique=True)
    terminal_name = db.Column(db.String(128), nullable=False)
    location = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    last_sync_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_heartbeat_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_synced_sequence = db.Column(db.Integer, nullable=False, default=0)

    def record_heartbeat(self):
        self.last_heartbeat_at = TimezoneUtils.utc_now()

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'terminal_number': self.terminal_number,
            'terminal_name': self.terminal_name,
            'location': self.location,
            'is_active': self.is_active,
            'last_sync_at': TimezoneUtils.format_for_api(self.last_sync_at),
            'last_heartbeat_at': TimezoneUtils.format_for_api(self.last_heartbeat_at),
            'last_synced_sequence': self.last_synced_sequence,
        }

    def __repr__(self):
        return f'<Terminal {self.terminal_number}>'
