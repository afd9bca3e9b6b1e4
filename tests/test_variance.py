from decimal import Decimal

import pytest

from stockledger.extensions import db
from stockledger.services.count_session_service import CountSessionManager
from stockledger.services.errors import (
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationError,
    VarianceDisputeError,
)
from stockledger.services.inventory_ledger import create_adjustment
from stockledger.services.snapshot_service import SnapshotService
from stockledger.services.valuation import (
    CurrentCostValuation,
    RetailPriceValuation,
    WeightedAverageCostValuation,
    get_valuation_strategy,
    quantize_money,
)
from stockledger.services.variance_service import VarianceDetector, VariancePolicy


class TestVariancePolicy:

    def test_threshold_is_strictly_greater(self):
        policy = VariancePolicy(threshold_percent=Decimal('5'))

        assert policy.exceeds_threshold(-5, 100) is False
        assert policy.exceeds_threshold(6, 100) is True
        assert policy.exceeds_threshold(0, 0) is False

    def test_zero_system_quantity_uses_floor_of_one(self):
        policy = VariancePolicy(threshold_percent=Decimal('5'))

        assert policy.exceeds_threshold(1, 0) is True

    def test_recount_agreement(self):
        policy = VariancePolicy(recount_tolerance_percent=Decimal('5'))

        assert policy.recount_agrees(-60, -58, 100) is True
        assert policy.recount_agrees(-60, -55, 100) is True
        assert policy.recount_agrees(-60, -10, 100) is False

    def test_policy_reads_config(self, app):
        app.config['VARIANCE_THRESHOLD_PERCENT'] = 12.5
        app.config['RECOUNT_TOLERANCE_PERCENT'] = 2

        with app.app_context():
            policy = VariancePolicy.from_config()

        assert policy.threshold_percent == Decimal('12.5')
        assert policy.recount_tolerance_percent == Decimal('2')


@pytest.mark.usefixtures('app_context')
class TestValuation:

    def test_current_cost_falls_back_to_base_price(self, make_product):
        costed = make_product(cost_price=Decimal('4.00'))
        uncosted = make_product(cost_price=None, base_price=Decimal('7.50'))

        strategy = CurrentCostValuation()

        assert strategy.unit_cost(costed) == Decimal('4.00')
        assert strategy.unit_cost(uncosted) == Decimal('7.50')
        assert strategy.value_of(costed, -3) == Decimal('-12.00')

    def test_retail_price(self, make_product):
        product = make_product(base_price=Decimal('9.99'))

        assert RetailPriceValuation().value_of(product, 2) == Decimal('19.98')

    def test_weighted_average_over_snapshots(self, make_product, actors):
        product = make_product(quantity=10, cost_price=Decimal('4.00'))
        SnapshotService.take_snapshot('daily', product_ids=[product.id])
        db.session.commit()

        product.cost_price = Decimal('6.00')
        db.session.commit()

        create_adjustment(product.id, 'found', 30, 'Back room pallet', actors['manager'], idempotency_key='found-1')
        SnapshotService.take_snapshot('daily', product_ids=[product.id])
        db.session.commit()

        assert WeightedAverageCostValuation().unit_cost(product) == Decimal('5.60')

    def test_weighted_average_without_history_uses_current_cost(self, make_product):
        product = make_product(cost_price=Decimal('3.25'))

        assert WeightedAverageCostValuation().unit_cost(product) == Decimal('3.25')

    def test_strategy_lookup(self, app):
        assert isinstance(get_valuation_strategy('retail_price'), RetailPriceValuation)
        app.config['VALUATION_METHOD'] = 'weighted_average'
        assert isinstance(get_valuation_strategy(), WeightedAverageCostValuation)
        with pytest.raises(ValueError):
            get_valuation_strategy('fifo')

    def test_quantize_money_rounds_half_up(self):
        assert quantize_money(Decimal('1.485')) == Decimal('1.49')
        assert quantize_money(None) == Decimal('0.00')


@pytest.fixture
def spot_session(actors, keys):
    def _session(*products, blind=False):
        return CountSessionManager.start_count_session(
            scope={'product_ids': [p.id for p in products]},
            count_type='spot',
            blind=blind,
            counters=None,
            actor=actors['manager'],
            idempotency_key=keys('session'),
        )

    return _session


@pytest.fixture
def submit(keys):
    def _submit(session, product, quantity, counter):
        return CountSessionManager.submit_count(session.id, product.id, quantity, counter, idempotency_key=keys('count'))

    return _submit


@pytest.mark.usefixtures('app_context')
class TestSessionSummary:

    def test_summary_totals(self, make_product, spot_session, submit, actors):
        shelf = make_product(quantity=100)
        cooler = make_product(quantity=10)
        session = spot_session(shelf, cooler)

        submit(session, shelf, 97, actors['counter'])
        submit(session, cooler, 12, actors['counter'])

        summary = VarianceDetector().session_variance_summary(session)
        assert summary.items_counted == 2
        assert summary.items_with_variance == 2
        assert summary.pending_recount == 1
        assert summary.total_variance_units == -1
        assert summary.total_absolute_variance_units == 5
        assert summary.total_cost_impact == Decimal('-4.00')
        assert summary.variance_percentage == Decimal('4.55')

    def test_cost_impact_follows_valuation_method(self, app, make_product, spot_session, submit, actors):
        app.config['VALUATION_METHOD'] = 'retail_price'
        product = make_product(quantity=100, base_price=Decimal('2.50'))
        session = spot_session(product)

        result = submit(session, product, 98, actors['counter'])

        assert result.count.unit_cost == Decimal('2.50')
        assert result.count.cost_impact == Decimal('-5.00')


@pytest.mark.usefixtures('app_context')
class TestResolveDispute:

    @pytest.fixture
    def resolve(self, keys):
        def _resolve(count_id, verified_quantity, actor, key=None, **kwargs):
            return VarianceDetector().resolve_dispute(
                count_id, verified_quantity, actor, idempotency_key=key or keys('resolve'), **kwargs
            )

        return _resolve

    def _dispute(self, make_product, spot_session, submit, actors):
        product = make_product(quantity=100)
        session = spot_session(product)
        first = submit(session, product, 40, actors['counter'])
        with pytest.raises(VarianceDisputeError):
            submit(session, product, 90, actors['counter_2'])
        return product, session, first.count

    def test_manager_settles_the_quantity(self, make_product, spot_session, submit, resolve, actors):
        product, session, count = self._dispute(make_product, spot_session, submit, actors)

        resolved = resolve(count.id, 85, actors['manager'], note='Shelf recounted by hand')

        assert resolved.status == 'verified'
        assert resolved.accepted_quantity == 85
        assert resolved.variance == -15
        assert resolved.resolved_by == 'manager-1'
        assert resolved.resolution_note == 'Shelf recounted by hand'

    def test_retry_after_lost_reply_returns_the_same_count(self, make_product, spot_session, submit, resolve, actors):
        _, _, count = self._dispute(make_product, spot_session, submit, actors)

        first = resolve(count.id, 85, actors['manager'], key='resolve-once')
        again = resolve(count.id, 85, actors['manager'], key='resolve-once')

        assert again.id == first.id
        assert again.accepted_quantity == 85
        with pytest.raises(InvalidStateTransitionError):
            resolve(count.id, 85, actors['manager'], key='resolve-twice')

    def test_key_is_required(self, make_product, spot_session, submit, actors):
        _, _, count = self._dispute(make_product, spot_session, submit, actors)

        with pytest.raises(ValidationError):
            VarianceDetector().resolve_dispute(count.id, 85, actors['manager'], idempotency_key=None)

    def test_counters_cannot_resolve(self, make_product, spot_session, submit, resolve, actors):
        _, _, count = self._dispute(make_product, spot_session, submit, actors)

        with pytest.raises(PermissionDeniedError):
            resolve(count.id, 85, actors['counter'])

    def test_verified_quantity_must_be_valid(self, make_product, spot_session, submit, resolve, actors):
        _, _, count = self._dispute(make_product, spot_session, submit, actors)

        with pytest.raises(ValidationError):
            resolve(count.id, -1, actors['manager'])

    def test_settled_counts_cannot_be_resolved_again(self, make_product, spot_session, submit, resolve, actors):
        product = make_product(quantity=100)
        session = spot_session(product)
        result = submit(session, product, 99, actors['counter'])

        with pytest.raises(InvalidStateTransitionError):
            resolve(result.count.id, 99, actors['manager'])

    def test_recount_pending_items_can_be_resolved_directly(self, make_product, spot_session, submit, resolve, actors):
        product = make_product(quantity=100)
        session = spot_session(product)
        result = submit(session, product, 40, actors['counter'])

        resolved = resolve(result.count.id, 100, actors['manager'])

        assert resolved.status == 'verified'
        assert resolved.variance == 0
