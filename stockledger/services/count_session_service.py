"""Physical count sessions: scoping, count entry, and the blind-count view."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from ..authz import Actor, manager_roles, require_role
from ..extensions import db
from ..models import COUNT_TYPES, CountSession, CountSessionCounter, InventoryCount, Product
from ..utils.code_generator import generate_session_number
from ..utils.timezone_utils import TimezoneUtils
from .errors import (
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    VarianceDisputeError,
)
from .idempotency import idempotent_operation
from .inventory_ledger import current_quantity
from .snapshot_service import SnapshotService
from .variance_service import VarianceDetector

logger = logging.getLogger(__name__)

# Fields a blind counter must not see while the session is being counted
BLIND_HIDDEN_FIELDS = (
    'system_quantity_at_count_time',
    'recount_system_quantity',
    'variance',
    'variance_percentage',
    'unit_cost',
    'cost_impact',
    'accepted_quantity',
)


@dataclass(slots=True)
class CountScope:
    category: Optional[str] = None
    location: Optional[str] = None
    product_ids: list[int] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Optional[dict]) -> "CountScope":
        data = data or {}
        raw_ids = data.get('product_ids') or []
        try:
            product_ids = sorted({int(pid) for pid in raw_ids})
        except (TypeError, ValueError):
            raise ValidationError.for_field('scope.product_ids', "Product ids must be integers")
        return cls(
            category=(data.get('category') or None),
            location=(data.get('location') or None),
            product_ids=product_ids,
        )


@dataclass(slots=True)
class CountResult:
    count: InventoryCount
    session: CountSession
    replayed: bool = False

    @property
    def needs_recount(self) -> bool:
        return self.count.status == 'needs_recount'

    def to_dict(self, reveal: bool = False) -> dict:
        return {
            'count': blind_projection(self.count, self.session, reveal=reveal),
            'session_status': self.session.status,
            'needs_recount': self.needs_recount,
            'replayed': self.replayed,
        }


def blind_projection(count: InventoryCount, session: CountSession, reveal: bool = False) -> dict:
    """Serialize a count, withholding system-side numbers from blind counters.

    Stored data is never altered; only this view is filtered.
    """
    data = count.to_dict()
    if session.is_blind and not reveal:
        for key in BLIND_HIDDEN_FIELDS:
            data.pop(key, None)
        data['blind'] = True
    return data


class CountSessionManager:
    """Lifecycle of count sessions and entry of individual counts."""

    @staticmethod
    def start_count_session(
        scope,
        count_type: str,
        blind: bool,
        counters: Optional[Iterable[str]],
        actor,
        idempotency_key: str,
        scheduled_for: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> CountSession:
        return _start_count_session(
            scope=scope,
            count_type=count_type,
            blind=blind,
            counters=counters,
            actor=actor,
            scheduled_for=scheduled_for,
            notes=notes,
            idempotency_key=idempotency_key,
        )

    @staticmethod
    def begin_session(session_id: int, actor, idempotency_key: str) -> CountSession:
        """Start a scheduled session: resolve scope and snapshot it."""
        return _begin_scheduled_session(session_id, actor=actor, idempotency_key=idempotency_key)

    @staticmethod
    def submit_count(session_id: int, product_id: int, counted_quantity: int, counter, idempotency_key: str) -> CountResult:
        """
        Record a count (or a recount of a flagged item) for one product.

        A recount that still disagrees with the original is stored as
        ``disputed`` and then reported with VarianceDisputeError.
        """
        count, replayed = _submit_count.execute(
            session_id=session_id,
            product_id=product_id,
            counted_quantity=counted_quantity,
            actor=Actor.coerce(counter, default_role='counter'),
            idempotency_key=idempotency_key,
        )
        if count.status == 'disputed' and count.recount_by is not None and count.resolved_by is None:
            raise VarianceDisputeError(
                f"Recount for product {count.product_id} disagrees with the original count; "
                "manager verification required.",
                count_ids=[count.id],
            )
        return CountResult(count=count, session=count.session, replayed=replayed)

    @staticmethod
    def close_session(session_id: int, actor, idempotency_key: str) -> CountSession:
        return _close_session(session_id, actor=actor, idempotency_key=idempotency_key)

    @staticmethod
    def cancel_scheduled_session(session_id: int, actor, idempotency_key: str) -> CountSession:
        return _cancel_scheduled_session(session_id, actor=actor, idempotency_key=idempotency_key)

    @staticmethod
    def get_session(session_id: int) -> CountSession:
        session = db.session.get(CountSession, session_id)
        if session is None:
            raise NotFoundError("Count session", session_id)
        return session

    @staticmethod
    def session_view(session_id: int, actor) -> dict:
        """Session detail as seen by ``actor``; blind sessions reveal system numbers to managers only."""
        session = CountSessionManager.get_session(session_id)
        actor = Actor.coerce(actor)
        reveal = bool(actor and actor.has_role(manager_roles()))
        counted = {count.product_id for count in session.counts}
        data = session.to_dict()
        data['counts'] = [blind_projection(count, session, reveal=reveal) for count in session.counts]
        data['remaining_product_ids'] = [pid for pid in session.scope_product_ids or [] if pid not in counted]
        if reveal or not session.is_blind:
            data['variance_summary'] = VarianceDetector().session_variance_summary(session).to_dict()
        return data

    @staticmethod
    def resolve_scope(count_type: str, scope: CountScope) -> list[int]:
        query = Product.query.filter(Product.is_active.is_(True))
        if count_type == 'full':
            pass
        elif count_type == 'cycle':
            if not scope.category and not scope.location:
                raise ValidationError.for_field('scope', "Cycle counts need a category or location")
            if scope.category:
                query = query.filter(Product.category == scope.category)
            if scope.location:
                query = query.filter(Product.location == scope.location)
        else:
            if not scope.product_ids:
                raise ValidationError.for_field('scope.product_ids', "Spot counts need explicit products")
            query = query.filter(Product.id.in_(scope.product_ids))

        product_ids = [pid for (pid,) in query.with_entities(Product.id).order_by(Product.id).all()]
        if count_type == 'spot':
            missing = sorted(set(scope.product_ids) - set(product_ids))
            if missing:
                raise ValidationError.for_field('scope.product_ids', f"Unknown or inactive products: {missing}")
        if not product_ids:
            raise ValidationError.for_field('scope', "Count scope does not match any active product")
        return product_ids

    @staticmethod
    def _begin(session: CountSession, actor: Actor) -> None:
        scope = CountScope(
            category=session.scope_category,
            location=session.scope_location,
            product_ids=list(session.scope_product_ids or []),
        )
        session.transition_to('in_progress')
        session.scope_product_ids = CountSessionManager.resolve_scope(session.count_type, scope)
        session.started_at = TimezoneUtils.utc_now()
        session.snapshot_key = SnapshotService.take_snapshot(
            'count_session',
            product_ids=session.scope_product_ids,
            reference_type='count_session',
            reference_id=session.id,
        )
        logger.info(
            f"Count session {session.session_number} started by {actor.id}: "
            f"{len(session.scope_product_ids)} product(s), snapshot {session.snapshot_key}"
        )

    @staticmethod
    def _lock_session(session_id: int) -> CountSession:
        session = (
            CountSession.query.filter_by(id=session_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if session is None:
            raise NotFoundError("Count session", session_id)
        return session


@idempotent_operation("count_session.start")
def _start_count_session(scope, count_type, blind, counters, actor, scheduled_for=None, notes=None):
    actor = require_role(actor, manager_roles(), "start count sessions")
    if count_type not in COUNT_TYPES:
        raise ValidationError.for_field('count_type', f"Count type must be one of: {', '.join(COUNT_TYPES)}")
    if not isinstance(scope, CountScope):
        scope = CountScope.from_mapping(scope)
    if scheduled_for is not None and not isinstance(scheduled_for, datetime):
        try:
            scheduled_for = TimezoneUtils.parse_iso(scheduled_for)
        except ValueError as exc:
            raise ValidationError.for_field('scheduled_for', str(exc))

    # Fail early on an empty scope even for sessions that start later
    product_ids = CountSessionManager.resolve_scope(count_type, scope)

    session = CountSession(
        session_number=generate_session_number(),
        count_type=count_type,
        status='scheduled',
        is_blind=bool(blind),
        scope_category=scope.category,
        scope_location=scope.location,
        scope_product_ids=product_ids,
        scheduled_for=TimezoneUtils.ensure_timezone_aware(scheduled_for),
        notes=notes,
        created_by=actor.id,
    )
    for counter_id in sorted({str(c) for c in (counters or []) if str(c).strip()}):
        session.counters.append(CountSessionCounter(counter_id=counter_id))
    db.session.add(session)
    db.session.flush()

    if session.scheduled_for is None or not TimezoneUtils.safe_datetime_compare(
        session.scheduled_for, TimezoneUtils.utc_now()
    ):
        CountSessionManager._begin(session, actor)
    else:
        logger.info(f"Count session {session.session_number} scheduled for {session.scheduled_for.isoformat()}")
    return session


@idempotent_operation("count_session.begin")
def _begin_scheduled_session(session_id, actor):
    actor = require_role(actor, manager_roles(), "start count sessions")
    session = CountSessionManager._lock_session(session_id)
    CountSessionManager._begin(session, actor)
    return session


@idempotent_operation("count_session.close")
def _close_session(session_id, actor):
    actor = require_role(actor, manager_roles(), "close count sessions")
    session = CountSessionManager._lock_session(session_id)
    disputed = [c.id for c in session.counts if c.status == 'disputed']
    if disputed:
        raise InvalidStateTransitionError(
            entity=CountSession.STATE_ENTITY,
            current=session.status,
            target='closed',
            reason=f"Disputed counts {disputed} must be resolved first.",
        )
    session.transition_to('closed')
    session.closed_at = TimezoneUtils.utc_now()
    session.closed_by = actor.id
    logger.info(f"Count session {session.session_number} closed by {actor.id}")
    return session


@idempotent_operation("count_session.cancel")
def _cancel_scheduled_session(session_id, actor):
    actor = require_role(actor, manager_roles(), "cancel count sessions")
    session = CountSessionManager._lock_session(session_id)
    if session.status != 'scheduled':
        raise InvalidStateTransitionError(
            entity=CountSession.STATE_ENTITY,
            current=session.status,
            target='closed',
            reason="Only scheduled sessions can be cancelled.",
        )
    session.transition_to('closed')
    session.closed_at = TimezoneUtils.utc_now()
    session.closed_by = actor.id
    logger.info(f"Scheduled count session {session.session_number} cancelled by {actor.id}")
    return session


@idempotent_operation("count.submit")
def _submit_count(session_id, product_id, counted_quantity, actor):
    if actor is None:
        raise ValidationError.for_field('counter', "A counter is required")
    if isinstance(counted_quantity, bool) or not isinstance(counted_quantity, int) or counted_quantity < 0:
        raise ValidationError.for_field('counted_quantity', "Counted quantity must be a non-negative whole number")

    session = CountSessionManager._lock_session(session_id)
    if not session.accepts_counts:
        raise InvalidStateTransitionError(
            entity=CountSession.STATE_ENTITY,
            current=session.status,
            target='counting',
            reason="Session is not accepting counts.",
        )
    if session.counter_ids and actor.id not in session.counter_ids and not actor.has_role(manager_roles()):
        raise PermissionDeniedError(
            f"Counter {actor.id} is not assigned to session {session.session_number}",
            actor_id=actor.id,
            required_roles=manager_roles(),
        )
    try:
        product_id = int(product_id)
    except (TypeError, ValueError):
        raise ValidationError.for_field('product_id', "Product id must be an integer")
    if product_id not in (session.scope_product_ids or []):
        raise ValidationError.for_field('product_id', f"Product {product_id} is not in this session's scope")

    product = db.session.get(Product, product_id)
    system_quantity = current_quantity(product_id)
    detector = VarianceDetector()
    count = InventoryCount.query.filter_by(session_id=session.id, product_id=product_id).first()

    if count is None:
        if session.status != 'in_progress':
            raise InvalidStateTransitionError(
                entity=CountSession.STATE_ENTITY,
                current=session.status,
                target='counting',
                reason="Only recounts are accepted once a session is under review.",
            )
        count = InventoryCount(
            session_id=session.id,
            product_id=product_id,
            counted_quantity=counted_quantity,
            counted_by=actor.id,
            counted_at=TimezoneUtils.utc_now(),
            system_quantity_at_count_time=system_quantity,
        )
        count.session = session
        count.product = product
        detector.evaluate(count, product)
        db.session.add(count)
        db.session.flush()
        _advance_when_complete(session)
    elif count.status == 'needs_recount':
        detector.apply_recount(count, product, counted_quantity, actor.id, system_quantity)
        db.session.flush()
    else:
        raise InvalidStateTransitionError(
            entity='inventory_count',
            current=count.status,
            target='counted',
            reason=f"Product {product_id} was already counted in this session.",
        )
    return count


def _advance_when_complete(session: CountSession) -> None:
    counted = {count.product_id for count in session.counts}
    if session.status == 'in_progress' and set(session.scope_product_ids or []) <= counted:
        session.transition_to('pending_review')
        session.completed_at = TimezoneUtils.utc_now()
        summary = VarianceDetector().session_variance_summary(session)
        logger.info(
            f"Count session {session.session_number} ready for review: "
            f"{summary.items_with_variance} variance(s), {summary.pending_recount} pending recount, "
            f"cost impact {summary.total_cost_impact}"
        )
