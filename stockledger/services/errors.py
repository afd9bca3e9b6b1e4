"""Typed failures raised by the inventory consistency engine.

Every error carries enough structured context for the API layer to render a
machine-readable payload and for the sync resolver to record why a queued
terminal operation was refused.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping


class InventoryEngineError(RuntimeError):
    """Base class for all engine failures."""

    error_type = "inventory_engine_error"
    status_code = 400
    retryable = False

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.error_type,
            "message": str(self),
            "details": self.details(),
            "retryable": self.retryable,
        }


class InsufficientStockError(InventoryEngineError):
    """Raised when a delta would drive a product's quantity below zero."""

    error_type = "insufficient_stock"
    status_code = 409

    def __init__(self, *, product_id: int, requested: int, available: int, sku: str | None = None):
        label = sku or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}: requested {requested}, available {available}."
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.sku = sku

    def details(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "sku": self.sku,
            "requested": self.requested,
            "available": self.available,
        }


class ConflictTimeoutError(InventoryEngineError):
    """Raised when lock contention on a product outlasts the retry budget."""

    error_type = "conflict_timeout"
    status_code = 503
    retryable = True

    def __init__(self, *, product_id: int, attempts: int):
        super().__init__(
            f"Could not update product {product_id} after {attempts} attempts; retry later."
        )
        self.product_id = product_id
        self.attempts = attempts

    def details(self) -> dict[str, Any]:
        return {"product_id": self.product_id, "attempts": self.attempts}


class DuplicateOperationError(InventoryEngineError):
    """Raised internally when an idempotency key has already been applied.

    Callers receive ``original`` as their result; it is never reported as a failure.
    """

    error_type = "duplicate_operation"
    status_code = 200

    def __init__(self, *, idempotency_key: str, original: Any = None):
        super().__init__(f"Operation {idempotency_key!r} was already applied.")
        self.idempotency_key = idempotency_key
        self.original = original

    def details(self) -> dict[str, Any]:
        return {"idempotency_key": self.idempotency_key}


class VarianceDisputeError(InventoryEngineError):
    """Raised when recounts disagree and a manager must verify physically."""

    error_type = "variance_dispute"
    status_code = 409

    def __init__(self, message: str | None = None, *, count_ids: Iterable[int] = ()):
        self.count_ids = sorted(int(count_id) for count_id in count_ids)
        super().__init__(
            message or f"Count variance disputed for counts {self.count_ids}; manual verification required."
        )

    def details(self) -> dict[str, Any]:
        return {"count_ids": self.count_ids}


class InvalidStateTransitionError(InventoryEngineError):
    """Raised when a state machine is asked for a transition it does not allow."""

    error_type = "invalid_state_transition"
    status_code = 409

    def __init__(self, *, entity: str, current: str | None, target: str, reason: str | None = None):
        message = f"Cannot move {entity} from {current!r} to {target!r}."
        if reason:
            message = f"{message} {reason}"
        super().__init__(message)
        self.entity = entity
        self.current = current
        self.target = target
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"entity": self.entity, "current": self.current, "target": self.target}


class ValidationError(InventoryEngineError):
    """Raised for malformed requests before any ledger interaction."""

    error_type = "validation_error"
    status_code = 422

    def __init__(self, message: str = "Validation failed", errors: Mapping[str, Any] | None = None):
        super().__init__(message)
        self.errors = dict(errors or {})

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, {field: [message]})

    def details(self) -> dict[str, Any]:
        return {"errors": self.errors}


class PermissionDeniedError(InventoryEngineError):
    """Raised when the actor's role does not permit the requested action."""

    error_type = "permission_denied"
    status_code = 403

    def __init__(self, message: str, *, actor_id: str | None = None, required_roles: Iterable[str] = ()):
        super().__init__(message)
        self.actor_id = actor_id
        self.required_roles = tuple(required_roles)

    def details(self) -> dict[str, Any]:
        return {"actor_id": self.actor_id, "required_roles": list(self.required_roles)}


class NotFoundError(InventoryEngineError):
    error_type = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier: Any):
        super().__init__(f"{resource} {identifier} not found.")
        self.resource = resource
        self.identifier = identifier

    def details(self) -> dict[str, Any]:
        return {"resource": self.resource, "identifier": self.identifier}


__all__ = [
    "InventoryEngineError",
    "InsufficientStockError",
    "ConflictTimeoutError",
    "DuplicateOperationError",
    "VarianceDisputeError",
    "InvalidStateTransitionError",
    "ValidationError",
    "PermissionDeniedError",
    "NotFoundError",
]
