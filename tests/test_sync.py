"""
Terminal sync test suite

Queued operations replay in local-sequence order, each exactly once, with
conflicts settled against current stock rather than terminal clocks.
"""

from datetime import datetime, timedelta, timezone

import pytest

from stockledger.extensions import db
from stockledger.models import InventoryCount, SyncOperation, Terminal, Transaction
from stockledger.services import sync_service
from stockledger.services.count_session_service import CountSessionManager
from stockledger.services.errors import ValidationError
from stockledger.services.inventory_ledger import _core, current_quantity, validate_ledger_consistency
from stockledger.services.sync_service import SyncResolver

CAPTURED = datetime(2026, 4, 2, 9, 30, tzinfo=timezone.utc)


def sale_op(sequence, key, product, quantity=1, number=None, actor=None, captured_at=CAPTURED):
    payload = {'items': [{'product_id': product.id, 'quantity': quantity}]}
    if actor:
        payload['actor'] = actor
    if number:
        payload['transaction_number'] = number
    return {
        'local_sequence': sequence,
        'idempotency_key': key,
        'operation_type': 'sale',
        'payload': payload,
        'captured_at': captured_at.isoformat(),
    }


def statuses(results):
    return [result.status for result in results]


def count_op(sequence, session, product, counted, actor=None):
    payload = {'session_id': session.id, 'product_id': product.id, 'counted_quantity': counted}
    if actor:
        payload['actor'] = actor
    return {
        'local_sequence': sequence,
        'idempotency_key': f'count-{session.id}-{sequence}',
        'operation_type': 'count',
        'payload': payload,
    }


def spot_session(actors, *products, counters=None):
    return CountSessionManager.start_count_session(
        scope={'product_ids': [product.id for product in products]},
        count_type='spot',
        blind=True,
        counters=counters,
        actor=actors['manager'],
        idempotency_key=f'session-{products[0].id}',
    )


@pytest.fixture
def sync(actors):
    """Replay a batch as the clerk (or ``actor``) the gateway authenticated."""

    def _sync(terminal_id, operations, actor=None):
        return SyncResolver.sync_terminal_queue(terminal_id, operations, actor or actors['clerk'])

    return _sync


@pytest.mark.usefixtures('app_context')
class TestOfflineConflicts:

    def test_last_unit_sold_on_two_terminals(self, sync, make_product, make_terminal):
        """Two registers each sold the last unit while offline."""
        product = make_product(quantity=1)
        front = make_terminal(terminal_number='T01')
        back = make_terminal(terminal_number='T02')

        first = sync(front.id, [sale_op(1, 'front-1', product, number='T01-20260402-O0001')])
        second = sync(
            back.id, [sale_op(1, 'back-1', product, number='T02-20260402-O0001', captured_at=CAPTURED - timedelta(hours=1))]
        )

        assert statuses(first) == ['applied']
        assert first[0].result['transaction_number'] == 'T01-20260402-O0001'
        assert statuses(second) == ['rejected']
        assert second[0].error['error_type'] == 'insufficient_stock'
        assert current_quantity(product.id) == 0

        failed = Transaction.query.filter_by(idempotency_key='back-1').one()
        assert failed.status == 'failed'
        assert failed.source == 'sync'
        assert validate_ledger_consistency() == []

    def test_resent_batch_returns_stored_results(self, sync, make_product, make_terminal):
        product = make_product(quantity=1)
        terminal = make_terminal()
        batch = [sale_op(1, 'k-1', product), sale_op(2, 'k-2', product)]

        first = sync(terminal.id, batch)
        again = sync(terminal.id, batch)

        assert statuses(first) == ['applied', 'rejected']
        assert [r.to_dict() for r in again] == [r.to_dict() for r in first]
        assert SyncOperation.query.count() == 2
        assert current_quantity(product.id) == 0

    def test_key_already_applied_online_is_a_duplicate(self, sync, make_product, make_terminal):
        product = make_product(quantity=5)
        terminal = make_terminal()
        sync(terminal.id, [sale_op(1, 'same-key', product)])

        results = sync(terminal.id, [sale_op(2, 'same-key', product)])

        assert statuses(results) == ['duplicate']
        assert current_quantity(product.id) == 4

    def test_operations_apply_in_sequence_order(self, sync, make_product, make_terminal, actors):
        product = make_product(quantity=3)
        terminal = make_terminal()
        void = {
            'local_sequence': 2,
            'idempotency_key': 'void-1',
            'operation_type': 'void',
            'payload': {
                'transaction_number': 'T01-20260402-O0001',
                'reason': 'Wrong item scanned',
                'actor': {'id': 'manager-1'},
            },
        }

        results = sync(
            terminal.id,
            [void, sale_op(1, 'sale-1', product, quantity=2, number='T01-20260402-O0001')],
            actors['manager'],
        )

        assert [r.local_sequence for r in results] == [1, 2]
        assert statuses(results) == ['applied', 'applied']
        assert results[1].result['status'] == 'voided'
        assert current_quantity(product.id) == 3
        assert db.session.get(Terminal, terminal.id).last_synced_sequence == 2


@pytest.mark.usefixtures('app_context')
class TestNotesAndCounts:

    def test_older_note_edit_is_superseded(self, sync, make_product, make_terminal):
        product = make_product(quantity=3)
        terminal = make_terminal()

        def note(sequence, text, captured_at):
            return {
                'local_sequence': sequence,
                'idempotency_key': f'note-{sequence}',
                'operation_type': 'note',
                'payload': {'transaction_number': 'T01-20260402-O0001', 'note': text},
                'captured_at': captured_at.isoformat(),
            }

        results = sync(terminal.id, [
            sale_op(1, 'sale-1', product, number='T01-20260402-O0001'),
            note(2, 'deliver Friday', CAPTURED + timedelta(minutes=5)),
            note(3, 'deliver Thursday', CAPTURED + timedelta(minutes=1)),
        ])

        assert statuses(results) == ['applied', 'applied', 'superseded']
        assert results[2].result['note'] == 'deliver Friday'

    def test_count_operation(self, sync, make_product, make_terminal, actors):
        product = make_product(quantity=10)
        other = make_product(quantity=10)
        terminal = make_terminal()
        session = spot_session(actors, product, other)

        results = sync(terminal.id, [count_op(1, session, product, 4, actor={'id': 'counter-1'})], actors['counter'])

        assert statuses(results) == ['applied']
        assert results[0].result['needs_recount'] is True
        assert current_quantity(product.id) == 10

    def test_adjustment_operation(self, sync, make_product, make_terminal):
        product = make_product(quantity=10)
        terminal = make_terminal()

        results = sync(terminal.id, [{
            'local_sequence': 1,
            'idempotency_key': 'adj-1',
            'operation_type': 'adjustment',
            'payload': {
                'product_id': product.id,
                'adjustment_type': 'damage',
                'quantity_change': -2,
                'reason': 'Dropped carton',
                'actor': {'id': 'clerk-1', 'role': 'clerk'},
            },
        }])

        assert statuses(results) == ['applied']
        assert results[0].result['new_quantity'] == 8


@pytest.mark.usefixtures('app_context')
class TestSyncIdentity:

    def test_recount_cannot_be_submitted_under_another_identity(self, sync, make_product, make_terminal, actors):
        product = make_product(quantity=100)
        terminal = make_terminal()
        session = spot_session(actors, product)
        first = CountSessionManager.submit_count(session.id, product.id, 40, actors['counter'], idempotency_key='first')
        assert first.needs_recount is True

        results = sync(
            terminal.id,
            [count_op(1, session, product, 42, actor={'id': 'anyone', 'role': 'admin'})],
            actors['counter'],
        )

        assert statuses(results) == ['rejected']
        assert results[0].error['error_type'] == 'permission_denied'
        count = db.session.get(InventoryCount, first.count.id)
        assert count.status == 'needs_recount'
        assert count.recount_by is None

    def test_same_counter_recount_through_sync_is_rejected(self, sync, make_product, make_terminal, actors):
        product = make_product(quantity=100)
        terminal = make_terminal()
        session = spot_session(actors, product)
        CountSessionManager.submit_count(session.id, product.id, 40, actors['counter'], idempotency_key='first')

        results = sync(terminal.id, [count_op(1, session, product, 42)], actors['counter'])

        assert statuses(results) == ['rejected']
        assert results[0].error['error_type'] == 'validation_error'

    def test_payload_role_does_not_grant_manager_rights(self, sync, make_product, make_terminal, actors):
        product = make_product(quantity=10)
        terminal = make_terminal()
        session = spot_session(actors, product, counters=['counter-2'])

        results = sync(
            terminal.id,
            [count_op(1, session, product, 10, actor={'id': 'counter-1', 'role': 'admin'})],
            actors['counter'],
        )

        assert statuses(results) == ['rejected']
        assert results[0].error['error_type'] == 'permission_denied'
        assert InventoryCount.query.count() == 0

    def test_batch_needs_an_authenticated_actor(self, make_product, make_terminal):
        product = make_product(quantity=3)
        terminal = make_terminal()

        with pytest.raises(ValidationError):
            SyncResolver.sync_terminal_queue(terminal.id, [sale_op(1, 'a', product)], None)
        assert current_quantity(product.id) == 3


@pytest.mark.usefixtures('app_context')
class TestBatchValidation:

    def test_bad_operation_is_rejected_alone(self, sync, make_product, make_terminal):
        product = make_product(quantity=3)
        terminal = make_terminal()
        bogus = {'local_sequence': 1, 'idempotency_key': 'odd-1', 'operation_type': 'teleport', 'payload': {}}

        results = sync(terminal.id, [bogus, sale_op(2, 'sale-1', product)])

        assert statuses(results) == ['rejected', 'applied']
        assert results[0].error['error_type'] == 'validation_error'
        assert current_quantity(product.id) == 2

    def test_missing_key_and_bad_timestamp_are_rejected(self, sync, make_product, make_terminal):
        product = make_product(quantity=3)
        terminal = make_terminal()
        keyless = sale_op(1, None, product)
        badly_timed = dict(sale_op(2, 'sale-2', product), captured_at='half past nine')

        results = sync(terminal.id, [keyless, badly_timed])

        assert statuses(results) == ['rejected', 'rejected']
        assert current_quantity(product.id) == 3

    def test_repeated_sequence_fails_the_batch(self, sync, make_product, make_terminal):
        product = make_product(quantity=3)
        terminal = make_terminal()

        with pytest.raises(ValidationError):
            sync(terminal.id, [sale_op(1, 'a', product), sale_op(1, 'b', product)])
        assert SyncOperation.query.count() == 0

    def test_batch_must_be_a_list(self, sync, make_terminal):
        terminal = make_terminal()

        with pytest.raises(ValidationError):
            sync(terminal.id, {'local_sequence': 1})

    def test_batch_size_limit(self, sync, app, make_product, make_terminal):
        app.config['SYNC_MAX_BATCH'] = 1
        product = make_product(quantity=3)
        terminal = make_terminal()

        with pytest.raises(ValidationError):
            sync(terminal.id, [sale_op(1, 'a', product), sale_op(2, 'b', product)])

    def test_inactive_terminal(self, sync, make_product, make_terminal):
        product = make_product(quantity=3)
        terminal = make_terminal(is_active=False)

        with pytest.raises(ValidationError):
            sync(terminal.id, [sale_op(1, 'a', product)])


@pytest.mark.usefixtures('app_context')
class TestRetries:

    def test_contention_holds_back_the_rest_of_the_batch(self, sync, app, monkeypatch, make_product, make_terminal):
        app.config['LEDGER_MAX_ATTEMPTS'] = 2
        product = make_product(quantity=5)
        terminal = make_terminal()
        batch = [sale_op(1, 'sale-1', product), sale_op(2, 'sale-2', product)]

        with monkeypatch.context() as patched:
            patched.setattr(_core, '_compare_and_swap', lambda *args: False)
            results = sync(terminal.id, batch)

        assert statuses(results) == ['retry', 'retry']
        assert all(result.error['error_type'] == 'conflict_timeout' for result in results)
        assert SyncOperation.query.count() == 0
        assert Transaction.query.count() == 0
        assert current_quantity(product.id) == 5

        resent = sync(terminal.id, batch)
        assert statuses(resent) == ['applied', 'applied']
        assert current_quantity(product.id) == 3

    def test_retry_does_not_advance_sync_cursor(self, sync, app, monkeypatch, make_product, make_terminal):
        app.config['LEDGER_MAX_ATTEMPTS'] = 1
        product = make_product(quantity=5)
        terminal = make_terminal()
        monkeypatch.setattr(_core, '_compare_and_swap', lambda *args: False)

        sync(terminal.id, [sale_op(1, 'sale-1', product)])

        refreshed = db.session.get(Terminal, terminal.id)
        assert refreshed.last_synced_sequence == 0
        assert refreshed.last_sync_at is not None

    def test_rejecting_errors_are_not_retryable(self):
        assert all(not error.retryable for error in sync_service.REJECTING_ERRORS)


@pytest.mark.usefixtures('app_context')
class TestHeartbeat:

    def test_heartbeat_updates_terminal(self, make_terminal):
        terminal = make_terminal()

        updated = SyncResolver.record_heartbeat(terminal.id)

        assert updated.last_heartbeat_at is not None
