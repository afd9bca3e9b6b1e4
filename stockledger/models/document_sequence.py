from ..extensions import db
from ..utils.timezone_utils import TimezoneUtils


class DocumentSequence(db.Model):
    """Named monotonic counter backing human-readable document numbers."""

    __tablename__ = 'document_sequence'

    id = db.Column(db.Integer, primary_key=True)
    sequence_key = db.Column(db.String(128), nullable=False, unique=True)
    current_value = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=TimezoneUtils.utc_now,
        onupdate=TimezoneUtils.utc_now,
    )

    def __repr__(self):
        return f'<DocumentSequence {self.sequence_key}={self.current_value}>'
