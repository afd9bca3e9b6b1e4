"""
Reconciliation approval workflow.

A count session in review produces one Reconciliation. Counting never moves
stock; only final approval posts one ``reconciliation`` adjustment per product
with a non-zero variance, all inside a single unit of work.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from flask import current_app

from ..authz import Actor, manager_roles, require_role
from ..extensions import db
from ..models import CountSession, Reconciliation
from ..utils.code_generator import generate_reconciliation_number
from ..utils.timezone_utils import TimezoneUtils
from .errors import (
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    VarianceDisputeError,
)
from .idempotency import idempotent_operation
from .inventory_ledger import LedgerContext, post_adjustment
from .snapshot_service import SnapshotService
from .variance_service import VarianceDetector

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ApprovalPolicy:
    """Who may approve, and when a second, distinct approver is required."""

    manager_roles: tuple = ("manager", "admin")
    large_variance_cost: Optional[Decimal] = Decimal("500.00")
    large_variance_units: int = 0
    second_approver_roles: tuple = ("manager", "admin")
    require_distinct_approvers: bool = True

    @classmethod
    def from_config(cls) -> "ApprovalPolicy":
        config = current_app.config
        cost = config.get("APPROVAL_LARGE_VARIANCE_COST")
        return cls(
            manager_roles=tuple(config.get("APPROVAL_MANAGER_ROLES") or cls.manager_roles),
            large_variance_cost=Decimal(str(cost)) if cost not in (None, "") else None,
            large_variance_units=int(config.get("APPROVAL_LARGE_VARIANCE_UNITS") or 0),
            second_approver_roles=tuple(config.get("APPROVAL_SECOND_APPROVER_ROLES") or cls.second_approver_roles),
        )

    def requires_second_approval(self, reconciliation: Reconciliation) -> bool:
        if self.large_variance_cost is not None and self.large_variance_cost > 0:
            if abs(Decimal(reconciliation.total_cost_impact or 0)) >= self.large_variance_cost:
                return True
        if self.large_variance_units and reconciliation.total_absolute_variance_units >= self.large_variance_units:
            return True
        return False


class ReconciliationWorkflow:
    """draft -> submitted -> approved | rejected, with optional two-level approval."""

    @staticmethod
    def submit_reconciliation(session_id: int, actor, idempotency_key: str, notes: Optional[str] = None) -> Reconciliation:
        return submit_reconciliation(
            session_id=session_id, actor=actor, notes=notes, idempotency_key=idempotency_key
        )

    @staticmethod
    def approve_reconciliation(
        reconciliation_id: int, actor, idempotency_key: str, policy: Optional[ApprovalPolicy] = None
    ) -> Reconciliation:
        return approve_reconciliation(
            reconciliation_id=reconciliation_id, actor=actor, policy=policy, idempotency_key=idempotency_key
        )

    @staticmethod
    def reject_reconciliation(
        reconciliation_id: int, actor, reason: str, idempotency_key: str, policy: Optional[ApprovalPolicy] = None
    ) -> Reconciliation:
        return reject_reconciliation(
            reconciliation_id=reconciliation_id,
            actor=actor,
            reason=reason,
            policy=policy,
            idempotency_key=idempotency_key,
        )

    @staticmethod
    def get_reconciliation(reconciliation_id: int) -> Reconciliation:
        reconciliation = db.session.get(Reconciliation, reconciliation_id)
        if reconciliation is None:
            raise NotFoundError("Reconciliation", reconciliation_id)
        return reconciliation

    @staticmethod
    def refresh_summary(
        reconciliation: Reconciliation,
        detector: Optional[VarianceDetector] = None,
        policy: Optional[ApprovalPolicy] = None,
    ) -> None:
        """Recompute the aggregates from the session's counts, and with them the approval level."""
        summary = (detector or VarianceDetector()).session_variance_summary(reconciliation.session)
        reconciliation.total_items_counted = summary.items_counted
        reconciliation.items_with_variance = summary.items_with_variance
        reconciliation.disputed_items = summary.disputed
        reconciliation.total_variance_units = summary.total_variance_units
        reconciliation.total_absolute_variance_units = summary.total_absolute_variance_units
        reconciliation.total_cost_impact = summary.total_cost_impact
        reconciliation.variance_percentage = summary.variance_percentage
        policy = policy or ApprovalPolicy.from_config()
        reconciliation.requires_second_approval = policy.requires_second_approval(reconciliation)

    @staticmethod
    def _lock(reconciliation_id: int) -> Reconciliation:
        reconciliation = (
            Reconciliation.query.filter_by(id=reconciliation_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if reconciliation is None:
            raise NotFoundError("Reconciliation", reconciliation_id)
        return reconciliation


@idempotent_operation("reconciliation.submit")
def submit_reconciliation(session_id, actor, notes=None):
    actor = Actor.coerce(actor)
    if actor is None:
        raise ValidationError.for_field("actor", "An actor is required")

    session = (
        CountSession.query.filter_by(id=session_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if session is None:
        raise NotFoundError("Count session", session_id)
    if session.status != "pending_review":
        raise InvalidStateTransitionError(
            entity=Reconciliation.STATE_ENTITY,
            current=None,
            target="submitted",
            reason=f"Count session {session.session_number} is {session.status}, not pending_review.",
        )
    if session.reconciliation is not None:
        raise InvalidStateTransitionError(
            entity=Reconciliation.STATE_ENTITY,
            current=session.reconciliation.status,
            target="submitted",
            reason=f"Session already has reconciliation {session.reconciliation.reconciliation_number}.",
        )
    awaiting = [count.id for count in session.counts if count.status == "needs_recount"]
    if awaiting:
        raise InvalidStateTransitionError(
            entity=Reconciliation.STATE_ENTITY,
            current="draft",
            target="submitted",
            reason=f"Counts {awaiting} still await a recount.",
        )

    reconciliation = Reconciliation(
        reconciliation_number=generate_reconciliation_number(),
        status="draft",
        notes=notes,
    )
    reconciliation.session = session
    ReconciliationWorkflow.refresh_summary(reconciliation)
    reconciliation.transition_to("submitted")
    reconciliation.submitted_by = actor.id
    reconciliation.submitted_at = TimezoneUtils.utc_now()
    db.session.add(reconciliation)
    db.session.flush()

    logger.info(
        f"Reconciliation {reconciliation.reconciliation_number} submitted by {actor.id}: "
        f"{reconciliation.items_with_variance} variance(s), cost impact {reconciliation.total_cost_impact}, "
        f"second approval {'required' if reconciliation.requires_second_approval else 'not required'}"
    )
    return reconciliation


@idempotent_operation("reconciliation.approve")
def approve_reconciliation(reconciliation_id, actor, policy=None):
    policy = policy or ApprovalPolicy.from_config()
    actor = require_role(actor, policy.manager_roles, "approve reconciliations")

    reconciliation = ReconciliationWorkflow._lock(reconciliation_id)
    if reconciliation.status != "submitted":
        raise InvalidStateTransitionError(
            entity=Reconciliation.STATE_ENTITY,
            current=reconciliation.status,
            target="approved",
        )

    session = reconciliation.session
    open_counts = [count.id for count in session.counts if count.is_open]
    if open_counts:
        raise VarianceDisputeError(
            f"Reconciliation {reconciliation.reconciliation_number} has unresolved counts {sorted(open_counts)}.",
            count_ids=open_counts,
        )

    ReconciliationWorkflow.refresh_summary(reconciliation, policy=policy)
    now = TimezoneUtils.utc_now()

    if reconciliation.requires_second_approval:
        if not reconciliation.first_approved_by:
            reconciliation.first_approved_by = actor.id
            reconciliation.first_approved_at = now
            db.session.flush()
            logger.info(
                f"Reconciliation {reconciliation.reconciliation_number} first approval by {actor.id}; "
                "awaiting second approver"
            )
            return reconciliation
        if policy.require_distinct_approvers and actor.id == reconciliation.first_approved_by:
            raise PermissionDeniedError(
                "Second approval must come from a different approver",
                actor_id=actor.id,
                required_roles=policy.second_approver_roles,
            )
        if not actor.has_role(policy.second_approver_roles):
            raise PermissionDeniedError(
                "Actor may not give the second approval",
                actor_id=actor.id,
                required_roles=policy.second_approver_roles,
            )

    posted = 0
    for count in session.counts:
        if not count.variance:
            continue
        post_adjustment(
            count.product_id,
            count.variance,
            LedgerContext(
                adjustment_type="reconciliation",
                reason=f"Reconciliation {reconciliation.reconciliation_number} ({session.session_number})",
                actor_id=actor.id,
                reference_type="reconciliation",
                reference_id=reconciliation.id,
            ),
        )
        posted += 1

    reconciliation.transition_to("approved")
    reconciliation.approved_by = actor.id
    reconciliation.approved_at = now
    session.transition_to("approved")
    SnapshotService.take_snapshot(
        "reconciliation",
        product_ids=session.scope_product_ids,
        reference_type="reconciliation",
        reference_id=reconciliation.id,
    )
    db.session.flush()

    logger.info(
        f"Reconciliation {reconciliation.reconciliation_number} approved by {actor.id}; "
        f"{posted} ledger adjustment(s) posted"
    )
    return reconciliation


@idempotent_operation("reconciliation.reject")
def reject_reconciliation(reconciliation_id, actor, reason, policy=None):
    policy = policy or ApprovalPolicy.from_config()
    actor = require_role(actor, policy.manager_roles or manager_roles(), "reject reconciliations")
    if not reason or not str(reason).strip():
        raise ValidationError.for_field("reason", "A rejection reason is required")

    reconciliation = ReconciliationWorkflow._lock(reconciliation_id)
    reconciliation.transition_to("rejected")
    reconciliation.rejected_by = actor.id
    reconciliation.rejected_at = TimezoneUtils.utc_now()
    reconciliation.rejection_reason = str(reason).strip()
    reconciliation.session.transition_to("rejected")
    db.session.flush()

    logger.info(f"Reconciliation {reconciliation.reconciliation_number} rejected by {actor.id}")
    return reconciliation
