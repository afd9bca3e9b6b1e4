"""
Reconciliation workflow test suite

Counts only move stock when a reconciliation is approved; disputes, missing
recounts and the second-approver rule all gate that approval.
"""

from decimal import Decimal

import pytest

from stockledger.extensions import db
from stockledger.models import InventoryAdjustment, InventorySnapshot, Reconciliation
from stockledger.services.count_session_service import CountSessionManager
from stockledger.services.errors import (
    InsufficientStockError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationError,
    VarianceDisputeError,
)
from stockledger.services.inventory_ledger import current_quantity, validate_ledger_consistency
from stockledger.services.reconciliation_service import ApprovalPolicy, ReconciliationWorkflow
from stockledger.services.transaction_service import TransactionProcessor
from stockledger.services.variance_service import VarianceDetector


@pytest.fixture
def counted_session(actors, keys):
    """Start a spot session over ``quantities`` ({product: counted}) and submit every count."""

    def _counted(quantities, counter=None):
        session = CountSessionManager.start_count_session(
            scope={'product_ids': [product.id for product in quantities]},
            count_type='spot',
            blind=True,
            counters=None,
            actor=actors['manager'],
            idempotency_key=keys('session'),
        )
        for product, counted in quantities.items():
            CountSessionManager.submit_count(
                session.id, product.id, counted, counter or actors['counter'], idempotency_key=keys('count')
            )
        return session

    return _counted


@pytest.fixture
def workflow(keys):
    class _Workflow:
        @staticmethod
        def submit(session, actor):
            return ReconciliationWorkflow.submit_reconciliation(session.id, actor, idempotency_key=keys('submit'))

        @staticmethod
        def approve(reconciliation, actor):
            return ReconciliationWorkflow.approve_reconciliation(
                reconciliation.id, actor, idempotency_key=keys('approve')
            )

        @staticmethod
        def reject(reconciliation, actor, reason):
            return ReconciliationWorkflow.reject_reconciliation(
                reconciliation.id, actor, reason, idempotency_key=keys('reject')
            )

    return _Workflow


@pytest.mark.usefixtures('app_context')
class TestApprovalPostsVariances:

    def test_recount_then_approval_corrects_stock(self, make_product, counted_session, workflow, actors, keys):
        """System says 100, shelf has 40, a second counter finds 42."""
        product = make_product(quantity=100)
        session = counted_session({product: 40})

        recount = CountSessionManager.submit_count(
            session.id, product.id, 42, actors['counter_2'], idempotency_key=keys('recount')
        )
        assert recount.count.status == 'verified'
        assert recount.count.variance == -58

        reconciliation = workflow.submit(session, actors['manager'])
        assert reconciliation.status == 'submitted'
        assert reconciliation.reconciliation_number.startswith('REC-')
        assert reconciliation.total_variance_units == -58
        assert reconciliation.requires_second_approval is False
        assert current_quantity(product.id) == 100

        approved = workflow.approve(reconciliation, actors['manager'])

        assert approved.status == 'approved'
        assert approved.approved_by == 'manager-1'
        assert approved.session.status == 'approved'
        assert current_quantity(product.id) == 42

        adjustment = InventoryAdjustment.query.filter_by(adjustment_type='reconciliation').one()
        assert adjustment.quantity_change == -58
        assert adjustment.reference_id == reconciliation.id
        snapshot = InventorySnapshot.query.filter_by(snapshot_type='reconciliation').one()
        assert snapshot.quantity == 42
        assert validate_ledger_consistency() == []

    def test_only_varying_products_are_adjusted(self, make_product, counted_session, workflow, actors):
        exact = make_product(quantity=10)
        short = make_product(quantity=50)
        session = counted_session({exact: 10, short: 49})

        reconciliation = workflow.submit(session, actors['manager'])
        workflow.approve(reconciliation, actors['manager'])

        assert InventoryAdjustment.query.filter_by(adjustment_type='reconciliation').count() == 1
        assert current_quantity(exact.id) == 10
        assert current_quantity(short.id) == 49

    def test_approval_is_idempotent(self, make_product, counted_session, workflow, actors):
        product = make_product(quantity=50)
        session = counted_session({product: 48})
        reconciliation = workflow.submit(session, actors['manager'])

        ReconciliationWorkflow.approve_reconciliation(reconciliation.id, actors['manager'], idempotency_key='approve-x')
        ReconciliationWorkflow.approve_reconciliation(reconciliation.id, actors['manager'], idempotency_key='approve-x')

        assert current_quantity(product.id) == 48
        assert InventoryAdjustment.query.filter_by(adjustment_type='reconciliation').count() == 1

        with pytest.raises(InvalidStateTransitionError):
            workflow.approve(reconciliation, actors['manager'])

    def test_stock_moved_since_count_rolls_back_approval(
        self, app, make_product, make_terminal, counted_session, workflow, actors
    ):
        app.config['VARIANCE_THRESHOLD_PERCENT'] = 1000
        product = make_product(quantity=10)
        terminal = make_terminal()
        session = counted_session({product: 2})
        reconciliation = workflow.submit(session, actors['manager'])

        TransactionProcessor.create_transaction(
            terminal.id, [{'product_id': product.id, 'quantity': 5}], 'sale-1', actors['clerk']
        )
        with pytest.raises(InsufficientStockError):
            workflow.approve(reconciliation, actors['manager'])

        assert db.session.get(Reconciliation, reconciliation.id).status == 'submitted'
        assert current_quantity(product.id) == 5
        assert InventoryAdjustment.query.filter_by(adjustment_type='reconciliation').count() == 0


@pytest.mark.usefixtures('app_context')
class TestDisputes:

    def test_dispute_blocks_approval_until_resolved(self, make_product, counted_session, workflow, actors, keys):
        product = make_product(quantity=100)
        session = counted_session({product: 40})
        with pytest.raises(VarianceDisputeError):
            CountSessionManager.submit_count(session.id, product.id, 90, actors['counter_2'], idempotency_key=keys())

        reconciliation = workflow.submit(session, actors['manager'])
        assert reconciliation.disputed_items == 1

        with pytest.raises(VarianceDisputeError) as excinfo:
            workflow.approve(reconciliation, actors['manager'])
        assert excinfo.value.count_ids == [session.counts[0].id]
        assert current_quantity(product.id) == 100

        with pytest.raises(InvalidStateTransitionError):
            CountSessionManager.close_session(session.id, actors['manager'], idempotency_key=keys('close'))

        VarianceDetector().resolve_dispute(session.counts[0].id, 88, actors['manager'], idempotency_key=keys('resolve'))
        refreshed = db.session.get(Reconciliation, reconciliation.id)
        assert refreshed.disputed_items == 0
        assert refreshed.total_variance_units == -12

        workflow.approve(reconciliation, actors['manager'])
        assert current_quantity(product.id) == 88

        closed = CountSessionManager.close_session(session.id, actors['manager'], idempotency_key=keys('close'))
        assert closed.status == 'closed'

    def test_resolution_can_raise_the_approval_level(self, make_product, counted_session, workflow, actors, keys):
        """Submitted at -10 units (cost -100); the manager then finds the shelf empty (cost -1000)."""
        product = make_product(quantity=100, cost_price=Decimal('10.00'))
        session = counted_session({product: 90})
        with pytest.raises(VarianceDisputeError):
            CountSessionManager.submit_count(session.id, product.id, 50, actors['counter_2'], idempotency_key=keys())

        reconciliation = workflow.submit(session, actors['manager'])
        assert reconciliation.requires_second_approval is False

        VarianceDetector().resolve_dispute(session.counts[0].id, 0, actors['manager'], idempotency_key=keys('resolve'))
        refreshed = db.session.get(Reconciliation, reconciliation.id)
        assert refreshed.total_cost_impact == Decimal('-1000.00')
        assert refreshed.requires_second_approval is True

        first = workflow.approve(reconciliation, actors['manager'])
        assert first.status == 'submitted'
        assert first.awaiting_second_approval is True
        assert current_quantity(product.id) == 100

        second = workflow.approve(reconciliation, actors['manager_2'])
        assert second.status == 'approved'
        assert current_quantity(product.id) == 0

    def test_rejected_session_with_dispute_can_still_close(self, make_product, counted_session, workflow, actors, keys):
        product = make_product(quantity=100)
        session = counted_session({product: 40})
        with pytest.raises(VarianceDisputeError):
            CountSessionManager.submit_count(session.id, product.id, 90, actors['counter_2'], idempotency_key=keys())
        reconciliation = workflow.submit(session, actors['manager'])
        workflow.reject(reconciliation, actors['manager'], 'Wrong aisle')

        with pytest.raises(InvalidStateTransitionError):
            CountSessionManager.close_session(session.id, actors['manager'], idempotency_key=keys('close'))

        resolved = VarianceDetector().resolve_dispute(
            session.counts[0].id, 95, actors['manager'], idempotency_key=keys('resolve')
        )
        assert resolved.status == 'verified'

        closed = CountSessionManager.close_session(session.id, actors['manager'], idempotency_key=keys('close'))
        assert closed.status == 'closed'
        assert db.session.get(Reconciliation, reconciliation.id).status == 'rejected'
        assert current_quantity(product.id) == 100
        assert InventoryAdjustment.query.filter_by(adjustment_type='reconciliation').count() == 0

    def test_close_replays_under_the_same_key(self, make_product, counted_session, workflow, actors):
        product = make_product(quantity=10)
        session = counted_session({product: 10})
        workflow.approve(workflow.submit(session, actors['manager']), actors['manager'])

        first = CountSessionManager.close_session(session.id, actors['manager'], idempotency_key='close-x')
        again = CountSessionManager.close_session(session.id, actors['manager'], idempotency_key='close-x')

        assert again.id == first.id
        assert again.status == 'closed'
        with pytest.raises(InvalidStateTransitionError):
            CountSessionManager.close_session(session.id, actors['manager'], idempotency_key='close-y')

    def test_pending_recount_blocks_submission(self, make_product, counted_session, workflow, actors):
        product = make_product(quantity=100)
        session = counted_session({product: 40})

        with pytest.raises(InvalidStateTransitionError):
            workflow.submit(session, actors['manager'])

    def test_session_still_counting_cannot_be_submitted(self, make_product, counted_session, workflow, actors, keys):
        counted = make_product(quantity=10)
        uncounted = make_product(quantity=10)
        session = CountSessionManager.start_count_session(
            scope={'product_ids': [counted.id, uncounted.id]},
            count_type='spot',
            blind=False,
            counters=None,
            actor=actors['manager'],
            idempotency_key=keys('session'),
        )
        CountSessionManager.submit_count(session.id, counted.id, 10, actors['counter'], idempotency_key=keys())

        with pytest.raises(InvalidStateTransitionError):
            workflow.submit(session, actors['manager'])

    def test_one_reconciliation_per_session(self, make_product, counted_session, workflow, actors):
        product = make_product(quantity=10)
        session = counted_session({product: 10})
        workflow.submit(session, actors['manager'])

        with pytest.raises(InvalidStateTransitionError):
            workflow.submit(session, actors['manager'])


@pytest.mark.usefixtures('app_context')
class TestApprovalRules:

    def test_clerks_cannot_approve(self, make_product, counted_session, workflow, actors):
        product = make_product(quantity=100)
        reconciliation = workflow.submit(counted_session({product: 99}), actors['manager'])

        with pytest.raises(PermissionDeniedError):
            workflow.approve(reconciliation, actors['clerk'])
        assert current_quantity(product.id) == 100

    def test_large_variance_needs_two_distinct_approvers(self, app, make_product, counted_session, workflow, actors):
        app.config['APPROVAL_LARGE_VARIANCE_COST'] = Decimal('10.00')
        product = make_product(quantity=100)
        reconciliation = workflow.submit(counted_session({product: 97}), actors['manager'])
        assert reconciliation.requires_second_approval is True

        first = workflow.approve(reconciliation, actors['manager'])
        assert first.status == 'submitted'
        assert first.awaiting_second_approval is True
        assert current_quantity(product.id) == 100

        with pytest.raises(PermissionDeniedError):
            workflow.approve(reconciliation, actors['manager'])

        second = workflow.approve(reconciliation, actors['manager_2'])
        assert second.status == 'approved'
        assert second.first_approved_by == 'manager-1'
        assert second.approved_by == 'manager-2'
        assert current_quantity(product.id) == 97

    def test_unit_threshold_triggers_second_approval(self, app, make_product, counted_session, workflow, actors):
        app.config['APPROVAL_LARGE_VARIANCE_UNITS'] = 3
        product = make_product(quantity=100, cost_price=Decimal('0.01'))

        reconciliation = workflow.submit(counted_session({product: 97}), actors['manager'])

        assert reconciliation.requires_second_approval is True

    def test_second_approver_role_restriction(self, app, make_product, counted_session, workflow, actors):
        app.config['APPROVAL_LARGE_VARIANCE_COST'] = Decimal('1.00')
        app.config['APPROVAL_SECOND_APPROVER_ROLES'] = ('admin',)
        product = make_product(quantity=100)
        reconciliation = workflow.submit(counted_session({product: 99}), actors['manager'])
        workflow.approve(reconciliation, actors['manager'])

        with pytest.raises(PermissionDeniedError):
            workflow.approve(reconciliation, actors['manager_2'])

        assert workflow.approve(reconciliation, actors['admin']).status == 'approved'

    def test_policy_defaults(self, app):
        policy = ApprovalPolicy.from_config()

        assert policy.large_variance_cost == Decimal('500.00')
        assert policy.large_variance_units == 0
        assert policy.manager_roles == ('manager', 'admin')

    def test_reject_requires_reason_and_leaves_stock(self, make_product, counted_session, workflow, actors):
        product = make_product(quantity=100)
        session = counted_session({product: 99})
        reconciliation = workflow.submit(session, actors['manager'])

        with pytest.raises(ValidationError):
            workflow.reject(reconciliation, actors['manager'], '  ')

        rejected = workflow.reject(reconciliation, actors['manager'], 'Count sheet was for the wrong aisle')
        assert rejected.status == 'rejected'
        assert rejected.session.status == 'rejected'
        assert rejected.rejection_reason == 'Count sheet was for the wrong aisle'
        assert current_quantity(product.id) == 100

        with pytest.raises(InvalidStateTransitionError):
            workflow.approve(reconciliation, actors['manager'])
