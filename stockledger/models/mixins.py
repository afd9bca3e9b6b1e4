from ..extensions import db
from ..services.errors import InvalidStateTransitionError
from ..utils.timezone_utils import TimezoneUtils


class TimestampMixin:
    """created_at/updated_at columns stamped in UTC."""

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=TimezoneUtils.utc_now)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=TimezoneUtils.utc_now,
        onupdate=TimezoneUtils.utc_now,
    )


class StateMachineMixin:
    """Guards writes to ``status`` with an explicit transition table.

    Subclasses declare ``TRANSITIONS`` as ``{current: {allowed targets}}``; states
    that are absent from the table are terminal.
    """

    STATE_ENTITY = "record"
    TRANSITIONS: dict = {}

    def can_transition_to(self, target: str) -> bool:
        return target in self.TRANSITIONS.get(self.status, ())

    def transition_to(self, target: str, reason: str | None = None) -> None:
        if not self.can_transition_to(target):
            raise InvalidStateTransitionError(
                entity=self.STATE_ENTITY,
                current=self.status,
                target=target,
                reason=reason,
            )
        self.status = target

    @property
    def is_terminal(self) -> bool:
        return not self.TRANSITIONS.get(self.status)
