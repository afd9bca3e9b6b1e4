from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update

from ..extensions import db
from ..models.document_sequence import DocumentSequence
from .timezone_utils import TimezoneUtils

__all__ = [
    "next_sequence_value",
    "generate_adjustment_number",
    "generate_session_number",
    "generate_reconciliation_number",
    "generate_transaction_number",
    "generate_snapshot_key",
]


def next_sequence_value(sequence_key: str) -> int:
    """
    Atomically increment and return the named counter.

    The row is read with SELECT ... FOR UPDATE where the dialect supports it and
    incremented in the caller's transaction, so a rolled-back caller releases
    its number.
    """
    row = db.session.execute(
        select(DocumentSequence.id, DocumentSequence.current_value)
        .where(DocumentSequence.sequence_key == sequence_key)
        .with_for_update()
    ).first()

    if row is None:
        sequence = DocumentSequence(sequence_key=sequence_key, current_value=1)
        db.session.add(sequence)
        db.session.flush()
        return 1

    next_value = row.current_value + 1
    db.session.execute(
        update(DocumentSequence)
        .where(DocumentSequence.id == row.id)
        .values(current_value=next_value, updated_at=TimezoneUtils.utc_now())
        .execution_options(synchronize_session=False)
    )
    return next_value


def generate_adjustment_number() -> str:
    """Format: ADJ-{6-digit sequence}"""
    return f"ADJ-{next_sequence_value('adjustment'):06d}"


def generate_session_number() -> str:
    """Format: CNT-{6-digit sequence}"""
    return f"CNT-{next_sequence_value('count_session'):06d}"


def generate_reconciliation_number() -> str:
    """Format: REC-{6-digit sequence}"""
    return f"REC-{next_sequence_value('reconciliation'):06d}"


def generate_transaction_number(terminal_number: str, at: datetime | None = None) -> str:
    """
    Generate a terminal-scoped transaction number.

    Format: {TERMINAL}-{YYYYMMDD}-{SEQUENCE}
    - YYYYMMDD: business date in the store timezone
    - SEQUENCE: 4-digit, zero-padded, restarting each day per terminal
    """
    business_date = TimezoneUtils.business_date(at)
    stamp = business_date.strftime("%Y%m%d")
    sequence = next_sequence_value(f"transaction:{terminal_number}:{stamp}")
    return f"{terminal_number}-{stamp}-{sequence:04d}"


def generate_snapshot_key(snapshot_type: str, at: datetime | None = None) -> str:
    moment = TimezoneUtils.ensure_timezone_aware(at) or TimezoneUtils.utc_now()
    sequence = next_sequence_value("snapshot")
    return f"SNAP-{snapshot_type.upper()}-{moment:%Y%m%d}-{sequence:05d}"
