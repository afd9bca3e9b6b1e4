"""Exactly-once execution for mutating engine operations.

Each operation is identified by a caller-supplied idempotency key. The first
execution stores ``(key -> operation, entity)`` in the same database
transaction as the operation's effects; any later call with the same key
returns the stored entity instead of running again.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CountSession, IdempotencyRecord, InventoryAdjustment, InventoryCount, Reconciliation, Transaction
from .errors import DuplicateOperationError, ValidationError

logger = logging.getLogger(__name__)

_ENTITY_TYPES = {
    model.__name__: model
    for model in (InventoryAdjustment, CountSession, InventoryCount, Reconciliation, Transaction)
}
MAX_KEY_LENGTH = 128


def normalize_key(idempotency_key: Optional[str]) -> str:
    if idempotency_key is None or not str(idempotency_key).strip():
        raise ValidationError.for_field("idempotency_key", "An idempotency key is required")
    key = str(idempotency_key).strip()
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError.for_field(
            "idempotency_key", f"Idempotency key must be at most {MAX_KEY_LENGTH} characters"
        )
    return key


class IdempotencyRegistry:
    """Lookup and storage of applied idempotency keys."""

    @staticmethod
    def find(idempotency_key: str, operation: str):
        record = IdempotencyRecord.query.filter_by(idempotency_key=idempotency_key).first()
        if record is None:
            return None
        if record.operation != operation:
            raise ValidationError.for_field(
                "idempotency_key",
                f"Idempotency key was already used for {record.operation}",
            )
        model = _ENTITY_TYPES.get(record.entity_type)
        if model is None:
            return None
        return db.session.get(model, record.entity_id)

    @staticmethod
    def ensure_not_applied(idempotency_key: str, operation: str) -> None:
        original = IdempotencyRegistry.find(idempotency_key, operation)
        if original is not None:
            raise DuplicateOperationError(idempotency_key=idempotency_key, original=original)

    @staticmethod
    def remember(idempotency_key: str, operation: str, entity: Any, actor_id: Optional[str] = None) -> None:
        entity_type = type(entity).__name__
        if entity_type not in _ENTITY_TYPES:
            raise TypeError(f"Cannot record idempotent result of type {entity_type}")
        db.session.add(
            IdempotencyRecord(
                idempotency_key=idempotency_key,
                operation=operation,
                entity_type=entity_type,
                entity_id=entity.id,
                actor_id=actor_id,
            )
        )


def idempotent_operation(operation: str) -> Callable:
    """
    Wrap a service function so it runs once per idempotency key.

    The wrapped function must not commit: the wrapper records the key and
    commits the unit of work, or rolls it back and re-raises on failure. The
    decorated callable returns the entity (replays included); ``.execute(...)``
    returns ``(entity, replayed)`` for callers that report replays.
    """

    def decorator(func: Callable) -> Callable:
        def _run(args, kwargs):
            key = normalize_key(kwargs.pop("idempotency_key", None))
            actor = kwargs.get("actor")
            actor_id = getattr(actor, "id", None)
            try:
                IdempotencyRegistry.ensure_not_applied(key, operation)
                result = func(*args, **kwargs)
                IdempotencyRegistry.remember(key, operation, result, actor_id=actor_id)
                db.session.commit()
            except DuplicateOperationError as duplicate:
                logger.info("Replaying %s for idempotency key %s", operation, key)
                return duplicate.original, True
            except IntegrityError:
                db.session.rollback()
                original = IdempotencyRegistry.find(key, operation)
                if original is None:
                    raise
                logger.info("Concurrent replay of %s for idempotency key %s", operation, key)
                return original, True
            except Exception:
                db.session.rollback()
                raise
            return result, False

        @wraps(func)
        def wrapper(*args, **kwargs):
            result, _ = _run(args, kwargs)
            return result

        def execute(*args, **kwargs):
            return _run(args, kwargs)

        wrapper.execute = execute
        wrapper.operation = operation
        return wrapper

    return decorator
