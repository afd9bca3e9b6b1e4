"""
Count session test suite

Sessions resolve their scope when they start, record counts without touching
stock, flag variances for recount and hide system numbers from blind counters.
"""

from datetime import timedelta

import pytest

from stockledger.extensions import db
from stockledger.models import InventoryCount, InventorySnapshot
from stockledger.services.count_session_service import BLIND_HIDDEN_FIELDS, CountSessionManager, blind_projection
from stockledger.services.errors import (
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationError,
    VarianceDisputeError,
)
from stockledger.services.inventory_ledger import current_quantity, validate_ledger_consistency
from stockledger.utils.timezone_utils import TimezoneUtils


@pytest.fixture
def start_session(actors, keys):
    def _start(product_ids=None, count_type='spot', blind=True, counters=None, actor=None, **kwargs):
        scope = kwargs.pop('scope', None) or {'product_ids': product_ids or []}
        return CountSessionManager.start_count_session(
            scope=scope,
            count_type=count_type,
            blind=blind,
            counters=counters,
            actor=actor or actors['manager'],
            idempotency_key=keys('session'),
            **kwargs,
        )

    return _start


@pytest.fixture
def count(keys):
    def _count(session, product, quantity, counter):
        return CountSessionManager.submit_count(session.id, product.id, quantity, counter, idempotency_key=keys('count'))

    return _count


@pytest.mark.usefixtures('app_context')
class TestSessionScope:

    def test_full_count_covers_active_products(self, make_product, start_session):
        first = make_product(quantity=5)
        second = make_product(quantity=3)
        make_product(quantity=1, is_active=False)

        session = start_session(count_type='full')

        assert session.status == 'in_progress'
        assert session.scope_product_ids == [first.id, second.id]
        assert session.session_number.startswith('CNT-')

    def test_cycle_count_by_category_and_location(self, make_product, start_session):
        dairy_front = make_product(quantity=5, category='dairy', location='A1')
        make_product(quantity=5, category='dairy', location='B2')
        make_product(quantity=5, category='bakery', location='A1')

        by_category = start_session(count_type='cycle', scope={'category': 'dairy'})
        both = start_session(count_type='cycle', scope={'category': 'dairy', 'location': 'A1'})

        assert len(by_category.scope_product_ids) == 2
        assert both.scope_product_ids == [dairy_front.id]

    def test_cycle_count_needs_a_filter(self, make_product, start_session):
        make_product(quantity=5)

        with pytest.raises(ValidationError):
            start_session(count_type='cycle', scope={})

    def test_spot_count_rejects_unknown_products(self, make_product, start_session):
        product = make_product(quantity=5)

        with pytest.raises(ValidationError) as excinfo:
            start_session(product_ids=[product.id, 999])
        assert 'scope.product_ids' in excinfo.value.errors

    def test_empty_scope_is_rejected(self, make_product, start_session):
        make_product(quantity=5, category='bakery')

        with pytest.raises(ValidationError):
            start_session(count_type='cycle', scope={'category': 'produce'})

    def test_unknown_count_type(self, make_product, start_session):
        product = make_product(quantity=5)

        with pytest.raises(ValidationError) as excinfo:
            start_session(product_ids=[product.id], count_type='annual')
        assert 'count_type' in excinfo.value.errors

    def test_only_managers_start_sessions(self, make_product, start_session, actors):
        product = make_product(quantity=5)

        with pytest.raises(PermissionDeniedError):
            start_session(product_ids=[product.id], actor=actors['counter'])

    def test_start_takes_a_count_session_snapshot(self, make_product, start_session):
        product = make_product(quantity=12)

        session = start_session(product_ids=[product.id])

        snapshot = InventorySnapshot.query.filter_by(snapshot_key=session.snapshot_key).one()
        assert snapshot.snapshot_type == 'count_session'
        assert snapshot.quantity == 12
        assert snapshot.reference_id == session.id

    def test_start_is_idempotent(self, make_product, actors):
        product = make_product(quantity=5)
        kwargs = dict(
            scope={'product_ids': [product.id]},
            count_type='spot',
            blind=False,
            counters=None,
            actor=actors['manager'],
            idempotency_key='session-1',
        )

        first = CountSessionManager.start_count_session(**kwargs)
        second = CountSessionManager.start_count_session(**kwargs)

        assert first.id == second.id
        assert InventorySnapshot.query.count() == 1


@pytest.mark.usefixtures('app_context')
class TestScheduledSessions:

    def test_future_session_waits_until_begun(self, make_product, start_session, actors, keys):
        product = make_product(quantity=5)
        tomorrow = TimezoneUtils.utc_now() + timedelta(days=1)

        session = start_session(product_ids=[product.id], scheduled_for=tomorrow)
        assert session.status == 'scheduled'
        assert session.snapshot_key is None

        begun = CountSessionManager.begin_session(session.id, actors['manager'], idempotency_key='begin-1')
        assert begun.status == 'in_progress'
        assert begun.snapshot_key is not None

        again = CountSessionManager.begin_session(session.id, actors['manager'], idempotency_key='begin-1')
        assert again.snapshot_key == begun.snapshot_key
        with pytest.raises(InvalidStateTransitionError):
            CountSessionManager.begin_session(session.id, actors['manager'], idempotency_key=keys('begin'))

    def test_scheduled_session_rejects_counts(self, make_product, start_session, count, actors):
        product = make_product(quantity=5)
        session = start_session(product_ids=[product.id], scheduled_for=TimezoneUtils.utc_now() + timedelta(days=1))

        with pytest.raises(InvalidStateTransitionError):
            count(session, product, 5, actors['counter'])

    def test_cancel_only_scheduled_sessions(self, make_product, start_session, actors, keys):
        product = make_product(quantity=5)
        scheduled = start_session(product_ids=[product.id], scheduled_for=TimezoneUtils.utc_now() + timedelta(days=1))
        running = start_session(product_ids=[product.id])

        cancelled = CountSessionManager.cancel_scheduled_session(scheduled.id, actors['manager'], idempotency_key=keys('cancel'))
        assert cancelled.status == 'closed'
        assert cancelled.closed_by == 'manager-1'

        with pytest.raises(InvalidStateTransitionError):
            CountSessionManager.cancel_scheduled_session(running.id, actors['manager'], idempotency_key=keys('cancel'))

    def test_invalid_schedule_timestamp(self, make_product, start_session):
        product = make_product(quantity=5)

        with pytest.raises(ValidationError) as excinfo:
            start_session(product_ids=[product.id], scheduled_for='next tuesday')
        assert 'scheduled_for' in excinfo.value.errors


@pytest.mark.usefixtures('app_context')
class TestCountEntry:

    def test_count_within_threshold(self, make_product, start_session, count, actors):
        product = make_product(quantity=100)
        other = make_product(quantity=10)
        session = start_session(product_ids=[product.id, other.id])

        result = count(session, product, 97, actors['counter'])

        assert result.count.status == 'counted'
        assert result.count.variance == -3
        assert result.needs_recount is False
        assert result.session.status == 'in_progress'

    def test_count_beyond_threshold_needs_recount(self, make_product, start_session, count, actors):
        product = make_product(quantity=100)
        session = start_session(product_ids=[product.id])

        result = count(session, product, 40, actors['counter'])

        assert result.needs_recount is True
        assert result.count.variance == -60
        assert result.count.system_quantity_at_count_time == 100

    def test_counts_never_move_stock(self, make_product, start_session, count, actors):
        product = make_product(quantity=100)
        session = start_session(product_ids=[product.id])

        count(session, product, 40, actors['counter'])

        assert current_quantity(product.id) == 100
        assert validate_ledger_consistency() == []

    def test_session_moves_to_review_when_every_product_is_counted(self, make_product, start_session, count, actors):
        first = make_product(quantity=10)
        second = make_product(quantity=10)
        session = start_session(product_ids=[first.id, second.id])

        count(session, first, 10, actors['counter'])
        result = count(session, second, 10, actors['counter'])

        assert result.session.status == 'pending_review'
        assert result.session.completed_at is not None

    def test_product_can_only_be_counted_once(self, make_product, start_session, count, actors):
        product = make_product(quantity=10)
        other = make_product(quantity=10)
        session = start_session(product_ids=[product.id, other.id])
        count(session, product, 10, actors['counter'])

        with pytest.raises(InvalidStateTransitionError):
            count(session, product, 9, actors['counter_2'])

    def test_out_of_scope_product(self, make_product, start_session, count, actors):
        product = make_product(quantity=10)
        stranger = make_product(quantity=10)
        session = start_session(product_ids=[product.id])

        with pytest.raises(ValidationError) as excinfo:
            count(session, stranger, 10, actors['counter'])
        assert 'product_id' in excinfo.value.errors

    def test_negative_count_is_invalid(self, make_product, start_session, count, actors):
        product = make_product(quantity=10)
        session = start_session(product_ids=[product.id])

        with pytest.raises(ValidationError):
            count(session, product, -1, actors['counter'])

    def test_assigned_counters_only(self, make_product, start_session, count, actors):
        product = make_product(quantity=10)
        other = make_product(quantity=10)
        session = start_session(product_ids=[product.id, other.id], counters=['counter-1'])

        with pytest.raises(PermissionDeniedError):
            count(session, product, 10, actors['counter_2'])

        assert count(session, product, 10, actors['counter']).count.counted_by == 'counter-1'
        assert count(session, other, 10, actors['manager']).count.counted_by == 'manager-1'

    def test_replayed_count(self, make_product, start_session, actors):
        product = make_product(quantity=10)
        other = make_product(quantity=10)
        session = start_session(product_ids=[product.id, other.id])

        first = CountSessionManager.submit_count(session.id, product.id, 8, actors['counter'], idempotency_key='c-1')
        again = CountSessionManager.submit_count(session.id, product.id, 8, actors['counter'], idempotency_key='c-1')

        assert again.replayed is True
        assert again.count.id == first.count.id
        assert InventoryCount.query.count() == 1


@pytest.mark.usefixtures('app_context')
class TestRecounts:

    def test_agreeing_recount_is_verified(self, make_product, start_session, count, actors):
        product = make_product(quantity=100)
        session = start_session(product_ids=[product.id])
        count(session, product, 40, actors['counter'])

        result = count(session, product, 42, actors['counter_2'])

        assert result.count.status == 'verified'
        assert result.count.accepted_quantity == 42
        assert result.count.variance == -58
        assert result.count.recount_by == 'counter-2'

    def test_recount_must_come_from_another_counter(self, make_product, start_session, count, actors):
        product = make_product(quantity=100)
        session = start_session(product_ids=[product.id])
        count(session, product, 40, actors['counter'])

        with pytest.raises(ValidationError) as excinfo:
            count(session, product, 42, actors['counter'])
        assert 'counter' in excinfo.value.errors

    def test_disagreeing_recount_is_disputed(self, make_product, start_session, count, actors):
        product = make_product(quantity=100)
        session = start_session(product_ids=[product.id])
        first = count(session, product, 40, actors['counter'])

        with pytest.raises(VarianceDisputeError) as excinfo:
            count(session, product, 90, actors['counter_2'])

        assert excinfo.value.count_ids == [first.count.id]
        stored = db.session.get(InventoryCount, first.count.id)
        assert stored.status == 'disputed'
        assert stored.recount_quantity == 90
        assert current_quantity(product.id) == 100


@pytest.mark.usefixtures('app_context')
class TestBlindCounts:

    def test_blind_projection_hides_system_numbers(self, make_product, start_session, count, actors):
        product = make_product(quantity=100)
        session = start_session(product_ids=[product.id], blind=True)
        result = count(session, product, 40, actors['counter'])

        hidden = blind_projection(result.count, session)
        revealed = blind_projection(result.count, session, reveal=True)

        assert hidden['blind'] is True
        assert not set(BLIND_HIDDEN_FIELDS) & set(hidden)
        assert hidden['counted_quantity'] == 40
        assert revealed['system_quantity_at_count_time'] == 100
        assert result.count.system_quantity_at_count_time == 100

    def test_session_view_depends_on_role(self, make_product, start_session, count, actors):
        product = make_product(quantity=100)
        other = make_product(quantity=10)
        session = start_session(product_ids=[product.id, other.id], blind=True)
        count(session, product, 40, actors['counter'])

        counter_view = CountSessionManager.session_view(session.id, actors['counter'])
        manager_view = CountSessionManager.session_view(session.id, actors['manager'])

        assert 'variance' not in counter_view['counts'][0]
        assert 'variance_summary' not in counter_view
        assert counter_view['remaining_product_ids'] == [other.id]
        assert manager_view['counts'][0]['variance'] == -60
        assert manager_view['variance_summary']['pending_recount'] == 1

    def test_open_sessions_are_not_filtered(self, make_product, start_session, count, actors):
        product = make_product(quantity=100)
        session = start_session(product_ids=[product.id], blind=False)
        result = count(session, product, 99, actors['counter'])

        view = CountSessionManager.session_view(session.id, actors['counter'])

        assert blind_projection(result.count, session)['variance'] == -1
        assert view['variance_summary']['items_with_variance'] == 1
