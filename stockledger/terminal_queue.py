"""
Terminal-side offline queue.

A register that loses connectivity keeps selling. Each operation is appended
to a local, ordered queue with a monotonic sequence number and an idempotency
key, then pushed to ``/api/sync/terminals/<id>/queue`` when the link returns.
Entries leave the queue only after the server acknowledges them; anything the
server asks to retry stays queued in order. A batch the server refuses outright
with a client error is reported as refused rather than as an outage.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

import requests
from sqlalchemy import JSON, Column, DateTime, Integer, MetaData, String, Table, create_engine, delete, insert, select, update

from .models.sync_operation import SYNC_OPERATION_TYPES
from .utils.timezone_utils import TimezoneUtils

logger = logging.getLogger(__name__)

SEQUENCE_COUNTER = "local_sequence"
# Client errors that are about timing rather than the batch itself
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


class SyncTransportError(RuntimeError):
    """The server could not be reached or failed transiently; the batch is worth resending."""


class SyncBatchRefusedError(RuntimeError):
    """
    The server refused the batch as a whole with a client error (bad
    credentials, unknown terminal, malformed body). Resending the same batch
    cannot succeed, so the queue stops and waits for an operator.
    """

    def __init__(self, status_code: int, message: str, error_type: Optional[str] = None, errors: Optional[dict] = None):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.error_type = error_type
        self.errors = errors or {}

    @classmethod
    def from_response(cls, response) -> SyncBatchRefusedError:
        try:
            body = response.json() or {}
        except ValueError:
            body = {"message": response.text}
        return cls(
            response.status_code,
            body.get("message") or response.reason or "Request refused",
            error_type=body.get("error_type"),
            errors=body.get("errors"),
        )

    def to_dict(self) -> dict:
        return {
            "status_code": self.status_code,
            "message": self.message,
            "error_type": self.error_type,
            "errors": self.errors,
        }


@dataclass(slots=True)
class QueuedEntry:
    local_sequence: int
    idempotency_key: str
    operation_type: str
    payload: dict
    captured_at: datetime

    def to_wire(self) -> dict:
        return {
            "local_sequence": self.local_sequence,
            "idempotency_key": self.idempotency_key,
            "operation_type": self.operation_type,
            "payload": self.payload,
            "captured_at": TimezoneUtils.format_for_api(self.captured_at),
        }


@dataclass(slots=True)
class FlushReport:
    sent: int = 0
    acknowledged: int = 0
    retry: int = 0
    rejected: list[dict] = field(default_factory=list)
    offline: bool = False
    refused: Optional[dict] = None


class QueueStore:
    """Durable storage behind a TerminalQueue."""

    def append(self, entry: QueuedEntry) -> None:
        raise NotImplementedError

    def pending(self) -> list[QueuedEntry]:
        raise NotImplementedError

    def remove(self, sequences: Iterable[int]) -> int:
        raise NotImplementedError

    def next_counter(self, name: str) -> int:
        raise NotImplementedError


class MemoryQueueStore(QueueStore):
    def __init__(self):
        self._entries: dict[int, QueuedEntry] = {}
        self._counters: dict[str, int] = {}

    def append(self, entry: QueuedEntry) -> None:
        self._entries[entry.local_sequence] = entry

    def pending(self) -> list[QueuedEntry]:
        return [self._entries[seq] for seq in sorted(self._entries)]

    def remove(self, sequences: Iterable[int]) -> int:
        removed = 0
        for seq in set(sequences):
            if self._entries.pop(seq, None) is not None:
                removed += 1
        return removed

    def next_counter(self, name: str) -> int:
        self._counters[name] = self._counters.get(name, 0) + 1
        return self._counters[name]


class SqlQueueStore(QueueStore):
    """Queue persisted in a local database (SQLite on the register by default)."""

    def __init__(self, url: str = "sqlite:///terminal_queue.db", engine=None):
        self.engine = engine or create_engine(url, future=True)
        self.metadata = MetaData()
        self.operations = Table(
            "queued_operation",
            self.metadata,
            Column("local_sequence", Integer, primary_key=True, autoincrement=False),
            Column("idempotency_key", String(128), nullable=False, unique=True),
            Column("operation_type", String(32), nullable=False),
            Column("payload", JSON, nullable=False),
            Column("captured_at", DateTime(timezone=True), nullable=False),
        )
        self.counters = Table(
            "queue_counter",
            self.metadata,
            Column("name", String(64), primary_key=True),
            Column("value", Integer, nullable=False),
        )
        self.metadata.create_all(self.engine)

    def append(self, entry: QueuedEntry) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(self.operations).values(
                    local_sequence=entry.local_sequence,
                    idempotency_key=entry.idempotency_key,
                    operation_type=entry.operation_type,
                    payload=entry.payload,
                    captured_at=entry.captured_at,
                )
            )

    def pending(self) -> list[QueuedEntry]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(self.operations).order_by(self.operations.c.local_sequence)).all()
        return [
            QueuedEntry(
                local_sequence=row.local_sequence,
                idempotency_key=row.idempotency_key,
                operation_type=row.operation_type,
                payload=row.payload,
                captured_at=TimezoneUtils.ensure_timezone_aware(row.captured_at),
            )
            for row in rows
        ]

    def remove(self, sequences: Iterable[int]) -> int:
        sequences = sorted(set(sequences))
        if not sequences:
            return 0
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(self.operations).where(self.operations.c.local_sequence.in_(sequences))
            )
        return result.rowcount

    def next_counter(self, name: str) -> int:
        with self.engine.begin() as conn:
            current = conn.execute(
                select(self.counters.c.value).where(self.counters.c.name == name)
            ).scalar_one_or_none()
            if current is None:
                conn.execute(insert(self.counters).values(name=name, value=1))
                return 1
            conn.execute(update(self.counters).where(self.counters.c.name == name).values(value=current + 1))
            return current + 1


class TerminalQueue:
    """Append-only, ordered queue of operations captured at one terminal."""

    def __init__(self, store: QueueStore, terminal_number: str, timezone: Optional[str] = None):
        self.store = store
        self.terminal_number = terminal_number
        self.timezone = timezone if TimezoneUtils.validate_timezone(timezone) else "UTC"

    def enqueue(self, operation_type: str, payload: dict, captured_at: Optional[datetime] = None) -> QueuedEntry:
        if operation_type not in SYNC_OPERATION_TYPES:
            raise ValueError(f"Unknown operation type: {operation_type}")
        if not isinstance(payload, dict):
            raise ValueError("Payload must be a dict")
        entry = QueuedEntry(
            local_sequence=self.store.next_counter(SEQUENCE_COUNTER),
            idempotency_key=str(uuid.uuid4()),
            operation_type=operation_type,
            payload=dict(payload),
            captured_at=TimezoneUtils.ensure_timezone_aware(captured_at) or TimezoneUtils.utc_now(),
        )
        self.store.append(entry)
        logger.debug(f"Queued {operation_type} #{entry.local_sequence} on terminal {self.terminal_number}")
        return entry

    def pending(self) -> list[QueuedEntry]:
        return self.store.pending()

    def acknowledge(self, results: Iterable[dict]) -> int:
        """Drop every entry the server settled; ``retry`` entries stay queued."""
        settled = [
            result["local_sequence"]
            for result in results
            if result.get("local_sequence") is not None and result.get("status") != "retry"
        ]
        return self.store.remove(settled)

    def next_transaction_number(self, at: Optional[datetime] = None) -> str:
        """Offline numbers carry an ``O`` so they never collide with server-issued ones."""
        stamp = TimezoneUtils.business_date(at, tz_name=self.timezone).strftime("%Y%m%d")
        sequence = self.store.next_counter(f"transaction:{stamp}")
        return f"{self.terminal_number}-{stamp}-O{sequence:04d}"

    def flush(self, transport, batch_size: int = 100) -> FlushReport:
        report = FlushReport()
        entries = self.pending()
        for start in range(0, len(entries), batch_size):
            batch = entries[start:start + batch_size]
            try:
                results = transport.send([entry.to_wire() for entry in batch])
            except SyncBatchRefusedError as exc:
                logger.error(
                    f"Terminal {self.terminal_number}: server refused the batch ({exc}); "
                    f"{len(entries) - report.sent} operation(s) held until the terminal is fixed"
                )
                report.refused = exc.to_dict()
                break
            except SyncTransportError as exc:
                logger.warning(f"Terminal {self.terminal_number} still offline: {exc}")
                report.offline = True
                break
            report.sent += len(batch)
            report.acknowledged += self.acknowledge(results)
            report.retry += sum(1 for result in results if result.get("status") == "retry")
            report.rejected.extend(result for result in results if result.get("status") == "rejected")
            if report.retry:
                # Preserve ordering: later batches wait behind the retried entry.
                break
        if report.rejected:
            logger.warning(
                f"Terminal {self.terminal_number}: {len(report.rejected)} operation(s) rejected by the server; "
                "manual resolution required"
            )
        return report


class HttpSyncTransport:
    """Posts queued operations to the sync endpoint over HTTP."""

    def __init__(
        self,
        base_url: str,
        terminal_id: int,
        actor_id: str,
        actor_role: str = "clerk",
        timeout: float = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.terminal_id = terminal_id
        self.headers = {"X-Actor-Id": actor_id, "X-Actor-Role": actor_role}
        self.timeout = timeout

    def send(self, operations: list[dict]) -> list[dict]:
        url = f"{self.base_url}/api/sync/terminals/{self.terminal_id}/queue"
        try:
            response = requests.post(
                url, json={"operations": operations}, headers=self.headers, timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except requests.HTTPError as exc:
            status_code = getattr(exc.response, "status_code", None)
            if status_code is not None and 400 <= status_code < 500 and status_code not in RETRYABLE_STATUS_CODES:
                raise SyncBatchRefusedError.from_response(exc.response) from exc
            logger.warning("Sync push to %s failed: %s", url, exc, extra={"status_code": status_code})
            raise SyncTransportError(str(exc)) from exc
        except (requests.RequestException, ValueError) as exc:
            logger.warning(
                "Sync push to %s failed: %s",
                url,
                exc,
                extra={"status_code": getattr(getattr(exc, "response", None), "status_code", None)},
            )
            raise SyncTransportError(str(exc)) from exc
        return (body.get("data") or {}).get("results", [])

    def heartbeat(self) -> bool:
        url = f"{self.base_url}/api/sync/terminals/{self.terminal_id}/heartbeat"
        try:
            response = requests.post(url, headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as exc:
            logger.debug("Heartbeat to %s failed: %s", url, exc)
            return False
