"""
Offline terminal sync.

Terminals queue operations locally while offline and replay them here in
local-sequence order. Each operation is settled in its own unit of work
through the same entry points the online API uses, keyed by the operation's
idempotency key, and the outcome is stored per (terminal, sequence) so a
resent queue is acknowledged without being applied twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..authz import Actor
from ..extensions import db
from ..models import SYNC_OPERATION_TYPES, SyncOperation, Terminal
from ..utils.timezone_utils import TimezoneUtils
from .count_session_service import CountSessionManager
from .errors import (
    ConflictTimeoutError,
    InsufficientStockError,
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    VarianceDisputeError,
)
from .idempotency import normalize_key
from .inventory_ledger import create_adjustment
from .transaction_service import TransactionProcessor

logger = logging.getLogger(__name__)

# Outcomes that need a person to look at them; never retried automatically
REJECTING_ERRORS = (
    InsufficientStockError,
    ValidationError,
    InvalidStateTransitionError,
    VarianceDisputeError,
    NotFoundError,
    PermissionDeniedError,
)


@dataclass(slots=True)
class OperationResult:
    local_sequence: int
    idempotency_key: Optional[str]
    operation_type: Optional[str]
    status: str  # applied, duplicate, rejected, superseded, retry
    result: Optional[dict] = None
    error: Optional[dict] = None

    @classmethod
    def from_record(cls, record: SyncOperation) -> "OperationResult":
        data = record.to_result()
        return cls(
            local_sequence=data["local_sequence"],
            idempotency_key=data["idempotency_key"],
            operation_type=data["operation_type"],
            status=data["status"],
            result=data["result"],
            error=data["error"],
        )

    def to_dict(self) -> dict:
        return {
            "local_sequence": self.local_sequence,
            "idempotency_key": self.idempotency_key,
            "operation_type": self.operation_type,
            "status": self.status,
            "result": self.result,
            "error": self.error,
        }


@dataclass(slots=True)
class _QueuedOperation:
    local_sequence: int
    idempotency_key: Optional[str]
    operation_type: Optional[str]
    payload: dict
    captured_at: Any
    problem: Optional[ValidationError] = None


class SyncResolver:
    """Applies a terminal's queued operations and records each outcome."""

    @staticmethod
    def sync_terminal_queue(terminal_id: int, operations: Iterable[dict], actor) -> list[OperationResult]:
        """Replay a batch as ``actor``, the identity the gateway authenticated for this request."""
        actor = Actor.coerce(actor)
        if actor is None:
            raise ValidationError.for_field("actor", "An authenticated actor is required to sync")
        terminal = SyncResolver._require_terminal(terminal_id)
        queued = SyncResolver._parse_batch(operations)

        results: list[OperationResult] = []
        retry_remaining = False
        for operation in queued:
            if retry_remaining:
                results.append(SyncResolver._retry(operation, "An earlier operation in this batch must be retried first"))
                continue

            existing = SyncOperation.query.filter_by(
                terminal_id=terminal.id, local_sequence=operation.local_sequence
            ).first()
            if existing is not None:
                results.append(OperationResult.from_record(existing))
                continue

            outcome = SyncResolver._settle(terminal, operation, actor)
            if outcome.status == "retry":
                # Later operations may depend on this one; hold them back too.
                retry_remaining = True
            results.append(outcome)

        SyncResolver._touch_terminal(terminal.id, results)
        statuses = {}
        for outcome in results:
            statuses[outcome.status] = statuses.get(outcome.status, 0) + 1
        logger.info(f"Sync from terminal {terminal.terminal_number}: {len(results)} operation(s) {statuses}")
        return results

    @staticmethod
    def get_terminal(terminal_id: int) -> Terminal:
        terminal = db.session.get(Terminal, terminal_id)
        if terminal is None:
            raise NotFoundError("Terminal", terminal_id)
        return terminal

    @staticmethod
    def record_heartbeat(terminal_id: int) -> Terminal:
        terminal = SyncResolver.get_terminal(terminal_id)
        terminal.record_heartbeat()
        db.session.commit()
        return terminal

    # ------------------------------------------------------------------
    # Batch handling
    # ------------------------------------------------------------------

    @staticmethod
    def _require_terminal(terminal_id: int) -> Terminal:
        terminal = SyncResolver.get_terminal(terminal_id)
        if not terminal.is_active:
            raise ValidationError.for_field("terminal_id", f"Terminal {terminal.terminal_number} is inactive")
        return terminal

    @staticmethod
    def _parse_batch(operations: Iterable[dict]) -> list[_QueuedOperation]:
        if operations is None or isinstance(operations, (str, bytes, dict)):
            raise ValidationError.for_field("operations", "Operations must be a list")
        operations = list(operations)
        max_batch = int(current_app.config.get("SYNC_MAX_BATCH", 500))
        if len(operations) > max_batch:
            raise ValidationError.for_field(
                "operations", f"At most {max_batch} operations may be synced per request"
            )

        queued: list[_QueuedOperation] = []
        seen: set[int] = set()
        for index, raw in enumerate(operations):
            if not isinstance(raw, dict):
                raise ValidationError.for_field(f"operations[{index}]", "Operation must be an object")
            sequence = raw.get("local_sequence")
            if isinstance(sequence, bool) or not isinstance(sequence, int) or sequence <= 0:
                raise ValidationError.for_field(
                    f"operations[{index}].local_sequence", "Local sequence must be a positive integer"
                )
            if sequence in seen:
                raise ValidationError.for_field(
                    f"operations[{index}].local_sequence", f"Local sequence {sequence} appears twice"
                )
            seen.add(sequence)

            operation = _QueuedOperation(
                local_sequence=sequence,
                idempotency_key=raw.get("idempotency_key"),
                operation_type=raw.get("operation_type"),
                payload=raw.get("payload") if isinstance(raw.get("payload"), dict) else {},
                captured_at=raw.get("captured_at"),
            )
            try:
                operation.idempotency_key = normalize_key(operation.idempotency_key)
                if operation.operation_type not in SYNC_OPERATION_TYPES:
                    raise ValidationError.for_field(
                        "operation_type",
                        f"Operation type must be one of: {', '.join(SYNC_OPERATION_TYPES)}",
                    )
                if not isinstance(raw.get("payload"), dict):
                    raise ValidationError.for_field("payload", "Payload must be an object")
                operation.captured_at = TimezoneUtils.parse_iso(operation.captured_at)
            except ValueError as exc:
                operation.problem = ValidationError.for_field("captured_at", str(exc))
            except ValidationError as exc:
                operation.problem = exc
            queued.append(operation)

        return sorted(queued, key=lambda op: op.local_sequence)

    @staticmethod
    def _settle(terminal: Terminal, operation: _QueuedOperation, actor: Actor) -> OperationResult:
        status, result, error = "applied", None, None
        try:
            if operation.problem is not None:
                raise operation.problem
            handler = _HANDLERS[operation.operation_type]
            status, result = handler(terminal, operation, actor)
        except ConflictTimeoutError as exc:
            db.session.rollback()
            logger.warning(
                f"Sync op {terminal.terminal_number}#{operation.local_sequence} hit lock contention; "
                "terminal should resend"
            )
            return SyncResolver._retry(operation, str(exc))
        except REJECTING_ERRORS as exc:
            db.session.rollback()
            status, error = "rejected", exc
            logger.warning(
                f"Sync op {terminal.terminal_number}#{operation.local_sequence} "
                f"({operation.operation_type}) rejected: {exc}"
            )

        record = SyncOperation(
            terminal_id=terminal.id,
            local_sequence=operation.local_sequence,
            idempotency_key=operation.idempotency_key or "",
            operation_type=operation.operation_type or "unknown",
            payload=operation.payload,
            captured_at=operation.captured_at if not isinstance(operation.captured_at, str) else None,
            status=status,
            result=result or (error.details() if isinstance(error, VarianceDisputeError) else None),
            error_type=error.error_type if error is not None else None,
            error_message=str(error) if error is not None else None,
        )
        try:
            db.session.add(record)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = SyncOperation.query.filter_by(
                terminal_id=terminal.id, local_sequence=operation.local_sequence
            ).first()
            if existing is None:
                raise
            return OperationResult.from_record(existing)
        return OperationResult.from_record(record)

    @staticmethod
    def _retry(operation: _QueuedOperation, message: str) -> OperationResult:
        return OperationResult(
            local_sequence=operation.local_sequence,
            idempotency_key=operation.idempotency_key,
            operation_type=operation.operation_type,
            status="retry",
            error={"error_type": ConflictTimeoutError.error_type, "message": message},
        )

    @staticmethod
    def _touch_terminal(terminal_id: int, results: list[OperationResult]) -> None:
        terminal = db.session.get(Terminal, terminal_id)
        settled = [r.local_sequence for r in results if r.status != "retry"]
        terminal.last_sync_at = TimezoneUtils.utc_now()
        if settled:
            terminal.last_synced_sequence = max(terminal.last_synced_sequence or 0, max(settled))
        terminal.record_heartbeat()
        db.session.commit()


# ----------------------------------------------------------------------
# Operation handlers: (terminal, operation, actor) -> (status, result)
# ----------------------------------------------------------------------


def _operation_actor(operation: _QueuedOperation, actor: Actor) -> Actor:
    """Queued operations run as the syncing actor; a recorded actor id may only repeat it."""
    claimed = operation.payload.get("actor")
    if isinstance(claimed, dict):
        claimed = claimed.get("id") or claimed.get("actor_id")
    if claimed not in (None, "") and str(claimed) != actor.id:
        raise PermissionDeniedError(
            f"Operation was captured by {claimed} but synced by {actor.id}",
            actor_id=actor.id,
        )
    return actor


def _transaction_id(payload: dict) -> int:
    if payload.get("transaction_id") is not None:
        return payload["transaction_id"]
    if payload.get("transaction_number"):
        return TransactionProcessor.find_by_number(payload["transaction_number"]).id
    raise ValidationError.for_field("transaction_id", "A transaction id or number is required")


def _transaction_outcome(outcome) -> tuple[str, dict]:
    transaction = outcome.transaction
    return ("duplicate" if outcome.replayed else "applied"), {
        "transaction_id": transaction.id,
        "transaction_number": transaction.transaction_number,
        "status": transaction.status,
    }


def _apply_sale(terminal: Terminal, operation: _QueuedOperation, actor: Actor):
    payload = operation.payload
    outcome = TransactionProcessor.create_transaction(
        terminal_id=terminal.id,
        items=payload.get("items"),
        idempotency_key=operation.idempotency_key,
        actor=_operation_actor(operation, actor),
        payments=payload.get("payments"),
        transaction_number=payload.get("transaction_number"),
        note=payload.get("note"),
        captured_at=operation.captured_at,
        source="sync",
    )
    return _transaction_outcome(outcome)


def _apply_void(terminal: Terminal, operation: _QueuedOperation, actor: Actor):
    outcome = TransactionProcessor.void_transaction(
        _transaction_id(operation.payload),
        operation.payload.get("reason"),
        actor=_operation_actor(operation, actor),
        idempotency_key=operation.idempotency_key,
    )
    return _transaction_outcome(outcome)


def _apply_refund(terminal: Terminal, operation: _QueuedOperation, actor: Actor):
    outcome = TransactionProcessor.refund_transaction(
        _transaction_id(operation.payload),
        operation.payload.get("reason"),
        actor=_operation_actor(operation, actor),
        idempotency_key=operation.idempotency_key,
        items=operation.payload.get("items"),
    )
    return _transaction_outcome(outcome)


def _apply_adjustment(terminal: Terminal, operation: _QueuedOperation, actor: Actor):
    payload = operation.payload
    adjustment, replayed = create_adjustment.execute(
        product_id=payload.get("product_id"),
        adjustment_type=payload.get("adjustment_type"),
        quantity_change=payload.get("quantity_change"),
        reason=payload.get("reason"),
        actor=_operation_actor(operation, actor),
        idempotency_key=operation.idempotency_key,
    )
    return ("duplicate" if replayed else "applied"), {
        "adjustment_id": adjustment.id,
        "adjustment_number": adjustment.adjustment_number,
        "new_quantity": adjustment.new_quantity,
    }


def _apply_count(terminal: Terminal, operation: _QueuedOperation, actor: Actor):
    payload = operation.payload
    outcome = CountSessionManager.submit_count(
        payload.get("session_id"),
        payload.get("product_id"),
        payload.get("counted_quantity"),
        counter=_operation_actor(operation, actor),
        idempotency_key=operation.idempotency_key,
    )
    return ("duplicate" if outcome.replayed else "applied"), {
        "count_id": outcome.count.id,
        "status": outcome.count.status,
        "needs_recount": outcome.needs_recount,
    }


def _apply_note(terminal: Terminal, operation: _QueuedOperation, actor: Actor):
    transaction, applied = TransactionProcessor.update_transaction_note(
        _transaction_id(operation.payload),
        operation.payload.get("note"),
        operation.captured_at,
    )
    return ("applied" if applied else "superseded"), {
        "transaction_id": transaction.id,
        "note": transaction.customer_note,
    }


_HANDLERS: dict[str, Callable] = {
    "sale": _apply_sale,
    "void": _apply_void,
    "refund": _apply_refund,
    "adjustment": _apply_adjustment,
    "count": _apply_count,
    "note": _apply_note,
}
