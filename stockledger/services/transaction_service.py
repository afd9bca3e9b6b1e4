"""Point-of-sale transactions and their ledger effects.

A transaction moves ``draft -> processing -> completed`` while every line
applies a negative delta through the inventory ledger in one database
transaction. Any InsufficientStockError rolls the whole unit back and the
attempt is persisted as ``failed``. Voids and refunds restore stock through
the same ledger entry point.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..authz import Actor
from ..extensions import db
from ..models import PAYMENT_METHODS, Payment, Product, Terminal, Transaction, TransactionItem
from ..utils.code_generator import generate_transaction_number
from ..utils.timezone_utils import TimezoneUtils
from .errors import InsufficientStockError, InvalidStateTransitionError, NotFoundError, ValidationError
from .idempotency import idempotent_operation, normalize_key
from .inventory_ledger import LedgerContext, apply_delta
from .snapshot_service import SnapshotService
from .valuation import quantize_money

logger = logging.getLogger(__name__)

MAX_LINE_ITEMS = 500


@dataclass(slots=True)
class TransactionResult:
    transaction: Transaction
    replayed: bool = False

    @property
    def status(self) -> str:
        return self.transaction.status

    def to_dict(self) -> dict:
        return {"transaction": self.transaction.to_dict(), "replayed": self.replayed}


@dataclass(slots=True)
class _PricedLine:
    product: Product
    quantity: int
    unit_price: Decimal
    gross: Decimal
    discount: Decimal
    tax: Decimal
    line_total: Decimal


@dataclass(slots=True)
class _Totals:
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal


class TransactionProcessor:
    """Converts sales, voids and refunds into ledger deltas."""

    # ------------------------------------------------------------------
    # Sales
    # ------------------------------------------------------------------

    @staticmethod
    def create_transaction(
        terminal_id: int,
        items: Iterable[dict],
        idempotency_key: str,
        actor,
        payments: Optional[Iterable[dict]] = None,
        transaction_number: Optional[str] = None,
        note: Optional[str] = None,
        captured_at=None,
        source: str = "online",
    ) -> TransactionResult:
        """Price, persist and complete a sale in a single unit of work."""
        key = normalize_key(idempotency_key)
        existing = Transaction.query.filter_by(idempotency_key=key).first()
        if existing is not None:
            return TransactionProcessor._replay(existing)

        actor = Actor.coerce(actor)
        captured_at = _timestamp("captured_at", captured_at)
        terminal = TransactionProcessor._require_terminal(terminal_id)
        lines = TransactionProcessor._price_lines(items)
        totals = TransactionProcessor._totals(lines)
        payment_rows = TransactionProcessor._build_payments(payments, totals.total)

        try:
            transaction = TransactionProcessor._build_transaction(
                terminal, key, actor, lines, totals, payment_rows,
                transaction_number=transaction_number,
                note=note,
                captured_at=captured_at,
                source=source,
            )
            TransactionProcessor._process(transaction, actor)
            db.session.commit()
        except InsufficientStockError as exc:
            db.session.rollback()
            TransactionProcessor._persist_failed_attempt(
                terminal, key, actor, lines, totals, exc,
                transaction_number=transaction_number,
                captured_at=captured_at,
                source=source,
            )
            raise
        except IntegrityError:
            db.session.rollback()
            existing = Transaction.query.filter_by(idempotency_key=key).first()
            if existing is None:
                raise
            logger.info(f"Concurrent submission of transaction key {key}; returning original")
            return TransactionProcessor._replay(existing)
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            f"Transaction {transaction.transaction_number} completed on terminal "
            f"{terminal.terminal_number}: {transaction.total_units} unit(s), total {transaction.total_amount}"
        )
        return TransactionResult(transaction)

    @staticmethod
    def open_draft(
        terminal_id: int,
        items: Iterable[dict],
        idempotency_key: str,
        actor,
        transaction_number: Optional[str] = None,
        note: Optional[str] = None,
    ) -> TransactionResult:
        """Persist a priced draft. Drafts never touch the ledger."""
        key = normalize_key(idempotency_key)
        existing = Transaction.query.filter_by(idempotency_key=key).first()
        if existing is not None:
            return TransactionProcessor._replay(existing)

        actor = Actor.coerce(actor)
        terminal = TransactionProcessor._require_terminal(terminal_id)
        lines = TransactionProcessor._price_lines(items)
        totals = TransactionProcessor._totals(lines)
        try:
            transaction = TransactionProcessor._build_transaction(
                terminal, key, actor, lines, totals, [],
                transaction_number=transaction_number,
                note=note,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return TransactionResult(transaction)

    @staticmethod
    def complete_transaction(
        transaction_id: int, actor, idempotency_key: str, payments: Optional[Iterable[dict]] = None
    ) -> TransactionResult:
        """Complete a draft once payment is confirmed."""
        transaction, replayed = _complete_transaction.execute(
            transaction_id, payments, actor=actor, idempotency_key=idempotency_key
        )
        return TransactionResult(transaction, replayed=replayed)

    @staticmethod
    def abandon_draft(transaction_id: int, actor, idempotency_key: str) -> TransactionResult:
        transaction, replayed = _abandon_draft.execute(
            transaction_id, actor=actor, idempotency_key=idempotency_key
        )
        return TransactionResult(transaction, replayed=replayed)

    # ------------------------------------------------------------------
    # Reversals
    # ------------------------------------------------------------------

    @staticmethod
    def void_transaction(transaction_id: int, reason: str, actor, idempotency_key: str) -> TransactionResult:
        transaction, replayed = _void_transaction.execute(
            transaction_id, reason, actor=actor, idempotency_key=idempotency_key
        )
        return TransactionResult(transaction, replayed=replayed)

    @staticmethod
    def refund_transaction(
        transaction_id: int,
        reason: str,
        actor,
        idempotency_key: str,
        items: Optional[Iterable[dict]] = None,
    ) -> TransactionResult:
        transaction, replayed = _refund_transaction.execute(
            transaction_id, reason, items, actor=actor, idempotency_key=idempotency_key
        )
        return TransactionResult(transaction, replayed=replayed)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @staticmethod
    def update_transaction_note(transaction_id: int, note: Optional[str], updated_at) -> tuple[Transaction, bool]:
        """
        Last-write-wins merge of the customer note. Returns ``(transaction,
        applied)``; an edit older than the stored one is ignored.
        """
        updated_at = _timestamp("updated_at", updated_at) or TimezoneUtils.utc_now()
        transaction = TransactionProcessor._lock_transaction(transaction_id)
        if not TimezoneUtils.safe_datetime_compare(updated_at, transaction.note_updated_at):
            db.session.rollback()
            return transaction, False
        try:
            transaction.customer_note = note
            transaction.note_updated_at = updated_at
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return transaction, True

    @staticmethod
    def get_transaction(transaction_id: int) -> Transaction:
        transaction = db.session.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    @staticmethod
    def find_by_number(transaction_number: str) -> Transaction:
        transaction = Transaction.query.filter_by(transaction_number=transaction_number).first()
        if transaction is None:
            raise NotFoundError("Transaction", transaction_number)
        return transaction

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _replay(transaction: Transaction) -> TransactionResult:
        if transaction.status == "failed" and transaction.failure_reason == InsufficientStockError.error_type:
            detail = transaction.failure_detail or {}
            logger.info(f"Replaying failed transaction {transaction.transaction_number}")
            raise InsufficientStockError(
                product_id=detail.get("product_id"),
                requested=detail.get("requested", 0),
                available=detail.get("available", 0),
                sku=detail.get("sku"),
            )
        logger.info(f"Replaying transaction {transaction.transaction_number} ({transaction.status})")
        return TransactionResult(transaction, replayed=True)

    @staticmethod
    def _require_terminal(terminal_id: int) -> Terminal:
        terminal = db.session.get(Terminal, terminal_id)
        if terminal is None:
            raise NotFoundError("Terminal", terminal_id)
        if not terminal.is_active:
            raise ValidationError.for_field("terminal_id", f"Terminal {terminal.terminal_number} is inactive")
        return terminal

    @staticmethod
    def _lock_transaction(transaction_id: int) -> Transaction:
        transaction = (
            Transaction.query.filter_by(id=transaction_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    @staticmethod
    def _price_lines(items: Iterable[dict]) -> list[_PricedLine]:
        items = list(items or [])
        if not items:
            raise ValidationError.for_field("items", "A transaction needs at least one item")
        if len(items) > MAX_LINE_ITEMS:
            raise ValidationError.for_field("items", f"A transaction may have at most {MAX_LINE_ITEMS} items")

        errors: dict[str, list[str]] = {}
        lines = []
        for index, item in enumerate(items):
            field = f"items[{index}]"
            if not isinstance(item, dict):
                errors[field] = ["Item must be an object"]
                continue
            quantity = item.get("quantity")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                errors[f"{field}.quantity"] = ["Quantity must be a positive whole number"]
                continue
            product = db.session.get(Product, item.get("product_id")) if item.get("product_id") is not None else None
            if product is None:
                errors[f"{field}.product_id"] = [f"Unknown product {item.get('product_id')!r}"]
                continue
            if not product.is_active:
                errors[f"{field}.product_id"] = [f"Product {product.sku} is not active"]
                continue
            try:
                unit_price = _decimal(item.get("unit_price"), default=product.base_price)
                discount = quantize_money(_decimal(item.get("discount"), default=Decimal("0")))
            except ValueError as exc:
                errors[field] = [str(exc)]
                continue
            if unit_price < 0:
                errors[f"{field}.unit_price"] = ["Unit price cannot be negative"]
                continue
            gross = quantize_money(unit_price * quantity)
            if discount < 0 or discount > gross:
                errors[f"{field}.discount"] = ["Discount must be between zero and the line amount"]
                continue
            taxable = gross - discount
            tax = quantize_money(taxable * Decimal(product.tax_rate or 0) / Decimal("100"))
            lines.append(_PricedLine(
                product=product,
                quantity=quantity,
                unit_price=quantize_money(unit_price),
                gross=gross,
                discount=discount,
                tax=tax,
                line_total=quantize_money(taxable),
            ))

        if errors:
            raise ValidationError("Invalid transaction items", errors)
        return lines

    @staticmethod
    def _totals(lines: list[_PricedLine]) -> _Totals:
        subtotal = sum((line.gross for line in lines), Decimal("0.00"))
        discount = sum((line.discount for line in lines), Decimal("0.00"))
        tax = sum((line.tax for line in lines), Decimal("0.00"))
        return _Totals(
            subtotal=quantize_money(subtotal),
            discount=quantize_money(discount),
            tax=quantize_money(tax),
            total=quantize_money(subtotal - discount + tax),
        )

    @staticmethod
    def _build_payments(payments: Optional[Iterable[dict]], total: Decimal) -> list[Payment]:
        if payments is None:
            return []
        payments = list(payments)
        errors: dict[str, list[str]] = {}
        rows = []
        for index, payment in enumerate(payments):
            field = f"payments[{index}]"
            method = (payment or {}).get("method")
            if method not in PAYMENT_METHODS:
                errors[f"{field}.method"] = [f"Payment method must be one of: {', '.join(PAYMENT_METHODS)}"]
                continue
            try:
                amount = quantize_money(_decimal(payment.get("amount")))
                cash_received = (
                    quantize_money(_decimal(payment.get("cash_received")))
                    if payment.get("cash_received") is not None else None
                )
            except ValueError as exc:
                errors[field] = [str(exc)]
                continue
            if amount <= 0:
                errors[f"{field}.amount"] = ["Payment amount must be positive"]
                continue
            cash_change = None
            if method == "cash" and cash_received is not None:
                if cash_received < amount:
                    errors[f"{field}.cash_received"] = ["Cash received is less than the amount"]
                    continue
                cash_change = cash_received - amount
            rows.append(Payment(
                method=method,
                amount=amount,
                cash_received=cash_received,
                cash_change=cash_change,
                reference=payment.get("reference"),
            ))
        if errors:
            raise ValidationError("Invalid payments", errors)

        if rows:
            paid = sum((row.amount for row in rows), Decimal("0.00"))
            tolerance = Decimal(str(current_app.config.get("PAYMENT_TOLERANCE", "0.01")))
            if abs(paid - total) > tolerance:
                raise ValidationError.for_field(
                    "payments", f"Payments total {paid} does not match transaction total {total}"
                )
        return rows

    @staticmethod
    def _build_transaction(
        terminal: Terminal,
        key: str,
        actor: Optional[Actor],
        lines: list[_PricedLine],
        totals: _Totals,
        payments: list[Payment],
        *,
        transaction_number: Optional[str] = None,
        note: Optional[str] = None,
        captured_at=None,
        source: str = "online",
    ) -> Transaction:
        number = TransactionProcessor._resolve_number(terminal, transaction_number, captured_at)
        transaction = Transaction(
            transaction_number=number,
            idempotency_key=key,
            terminal_id=terminal.id,
            status="draft",
            source=source,
            subtotal=totals.subtotal,
            discount_amount=totals.discount,
            tax_amount=totals.tax,
            total_amount=totals.total,
            customer_note=note,
            note_updated_at=TimezoneUtils.utc_now() if note else None,
            created_by=actor.id if actor else None,
            captured_at=captured_at,
        )
        for line in lines:
            transaction.items.append(TransactionItem(
                product_id=line.product.id,
                product_snapshot=line.product.catalog_snapshot(),
                quantity=line.quantity,
                unit_price=line.unit_price,
                discount_amount=line.discount,
                tax_amount=line.tax,
                line_total=line.line_total,
            ))
        for payment in payments:
            transaction.payments.append(payment)
        db.session.add(transaction)
        db.session.flush()
        return transaction

    @staticmethod
    def _resolve_number(terminal: Terminal, transaction_number: Optional[str], captured_at) -> str:
        if transaction_number is None:
            return generate_transaction_number(terminal.terminal_number, captured_at)
        number = str(transaction_number).strip()
        if not number:
            raise ValidationError.for_field("transaction_number", "Transaction number cannot be blank")
        if Transaction.query.filter_by(transaction_number=number).first() is not None:
            raise ValidationError.for_field(
                "transaction_number", f"Transaction number {number} is already in use"
            )
        return number

    @staticmethod
    def _process(transaction: Transaction, actor: Optional[Actor]) -> None:
        transaction.transition_to("processing")
        for item in transaction.items:
            apply_delta(
                item.product_id,
                -item.quantity,
                LedgerContext(
                    adjustment_type="sale",
                    reason=f"Sale {transaction.transaction_number}",
                    actor_id=actor.id if actor else transaction.created_by,
                    reference_type="transaction",
                    reference_id=transaction.id,
                ),
            )
        transaction.mark_completed()
        if current_app.config.get("SNAPSHOT_ON_TRANSACTION"):
            SnapshotService.take_snapshot(
                "transaction",
                product_ids=[item.product_id for item in transaction.items],
                reference_type="transaction",
                reference_id=transaction.id,
            )

    @staticmethod
    def _persist_failed_attempt(
        terminal: Terminal,
        key: str,
        actor: Optional[Actor],
        lines: list[_PricedLine],
        totals: _Totals,
        error: InsufficientStockError,
        *,
        transaction_number: Optional[str] = None,
        captured_at=None,
        source: str = "online",
    ) -> Transaction:
        # Lines were expired by the rollback; reload their products in this new unit.
        for line in lines:
            line.product = db.session.get(Product, line.product.id)
        terminal = db.session.get(Terminal, terminal.id)
        try:
            transaction = TransactionProcessor._build_transaction(
                terminal, key, actor, lines, totals, [],
                transaction_number=transaction_number,
                captured_at=captured_at,
                source=source,
            )
            transaction.transition_to("processing")
            TransactionProcessor._mark_failed(transaction, error)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.warning(
            f"Transaction {transaction.transaction_number} failed: {error} "
            f"(terminal {terminal.terminal_number})"
        )
        return transaction

    @staticmethod
    def _mark_failed(transaction: Transaction, error: InsufficientStockError) -> None:
        transaction.transition_to("failed")
        transaction.failure_reason = error.error_type
        transaction.failure_detail = error.details()


@idempotent_operation("transaction.complete")
def _complete_transaction(transaction_id, payments=None, actor=None):
    actor = Actor.coerce(actor)
    transaction = TransactionProcessor._lock_transaction(transaction_id)
    if transaction.status == "failed":
        TransactionProcessor._replay(transaction)
    if transaction.status != "draft":
        raise InvalidStateTransitionError(
            entity=Transaction.STATE_ENTITY,
            current=transaction.status,
            target="completed",
            reason="Only drafts can be completed.",
        )

    payment_rows = TransactionProcessor._build_payments(payments, Decimal(transaction.total_amount))
    try:
        for payment in payment_rows:
            transaction.payments.append(payment)
        TransactionProcessor._process(transaction, actor)
    except InsufficientStockError as exc:
        # The failed status outlives the rollback of the sale itself
        db.session.rollback()
        transaction = TransactionProcessor._lock_transaction(transaction_id)
        transaction.transition_to("processing")
        TransactionProcessor._mark_failed(transaction, exc)
        db.session.commit()
        raise
    logger.info(f"Draft {transaction.transaction_number} completed, total {transaction.total_amount}")
    return transaction


@idempotent_operation("transaction.abandon")
def _abandon_draft(transaction_id, actor=None):
    actor = Actor.coerce(actor)
    transaction = TransactionProcessor._lock_transaction(transaction_id)
    transaction.transition_to("abandoned")
    logger.info(f"Draft {transaction.transaction_number} abandoned by {actor.id if actor else 'unknown'}")
    return transaction


@idempotent_operation("transaction.void")
def _void_transaction(transaction_id, reason, actor=None):
    actor = Actor.coerce(actor)
    if not reason or not str(reason).strip():
        raise ValidationError.for_field("reason", "A void reason is required")
    if actor is None:
        raise ValidationError.for_field("actor", "An actor is required")

    transaction = TransactionProcessor._lock_transaction(transaction_id)
    transaction.mark_voided(reason=str(reason).strip(), actor_id=actor.id)
    for item in transaction.items:
        apply_delta(
            item.product_id,
            item.quantity,
            LedgerContext(
                adjustment_type="void",
                reason=f"Void {transaction.transaction_number}: {str(reason).strip()}",
                actor_id=actor.id,
                reference_type="transaction",
                reference_id=transaction.id,
            ),
        )
    logger.info(f"Transaction {transaction.transaction_number} voided by {actor.id}")
    return transaction


@idempotent_operation("transaction.refund")
def _refund_transaction(transaction_id, reason, items=None, actor=None):
    actor = Actor.coerce(actor)
    if not reason or not str(reason).strip():
        raise ValidationError.for_field("reason", "A refund reason is required")
    if actor is None:
        raise ValidationError.for_field("actor", "An actor is required")

    transaction = TransactionProcessor._lock_transaction(transaction_id)
    if transaction.status not in ("completed", "partially_refunded"):
        # Raise through the state machine for a consistent error payload
        transaction.transition_to("refunded")

    plan = _plan_refund(transaction, items)
    for item, quantity in plan:
        item.refunded_quantity = (item.refunded_quantity or 0) + quantity
        apply_delta(
            item.product_id,
            quantity,
            LedgerContext(
                adjustment_type="refund",
                reason=f"Refund {transaction.transaction_number}: {str(reason).strip()}",
                actor_id=actor.id,
                reference_type="transaction",
                reference_id=transaction.id,
            ),
        )

    fully_refunded = all(item.refundable_quantity == 0 for item in transaction.items)
    transaction.transition_to("refunded" if fully_refunded else "partially_refunded")
    logger.info(
        f"Transaction {transaction.transaction_number} refunded "
        f"{sum(q for _, q in plan)} unit(s) by {actor.id}"
    )
    return transaction


def _plan_refund(transaction: Transaction, items: Optional[Iterable[dict]]) -> list[tuple[TransactionItem, int]]:
    if items is None:
        plan = [(item, item.refundable_quantity) for item in transaction.items if item.refundable_quantity > 0]
        if not plan:
            raise ValidationError.for_field("items", "Nothing left to refund")
        return plan

    by_id = {item.id: item for item in transaction.items}
    by_product: dict[int, list[TransactionItem]] = {}
    for item in transaction.items:
        by_product.setdefault(item.product_id, []).append(item)

    requested: dict[int, int] = {}
    errors: dict[str, list[str]] = {}
    for index, entry in enumerate(items):
        field = f"items[{index}]"
        quantity = (entry or {}).get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            errors[f"{field}.quantity"] = ["Quantity must be a positive whole number"]
            continue
        if entry.get("item_id") is not None:
            candidates = [by_id[entry["item_id"]]] if entry["item_id"] in by_id else []
        else:
            candidates = by_product.get(entry.get("product_id"), [])
        if not candidates:
            errors[field] = ["Item is not part of this transaction"]
            continue
        remaining = quantity
        for candidate in candidates:
            available = candidate.refundable_quantity - requested.get(candidate.id, 0)
            take = min(available, remaining)
            if take > 0:
                requested[candidate.id] = requested.get(candidate.id, 0) + take
                remaining -= take
        if remaining:
            errors[f"{field}.quantity"] = ["Refund exceeds the quantity sold minus earlier refunds"]

    if errors:
        raise ValidationError("Invalid refund", errors)
    if not requested:
        raise ValidationError.for_field("items", "Nothing to refund")
    return [(by_id[item_id], quantity) for item_id, quantity in requested.items()]


def _decimal(value: Any, default: Any = None) -> Decimal:
    if value is None or value == "":
        if default is None:
            raise ValueError("Amount is required")
        value = default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {value!r}") from None


def _timestamp(field: str, value):
    try:
        return TimezoneUtils.parse_iso(value)
    except ValueError as exc:
        raise ValidationError.for_field(field, str(exc)) from None
