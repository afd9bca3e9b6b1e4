"""
Pytest configuration and shared fixtures for StockLedger tests.
"""
import itertools
import os
import tempfile
from decimal import Decimal

import pytest

from stockledger import create_app
from stockledger.authz import Actor
from stockledger.extensions import db
from stockledger.models import Product, Terminal
from stockledger.services.inventory_ledger import LedgerContext, post_adjustment


@pytest.fixture(scope='function')
def app():
    """Create and configure a new app instance for each test."""
    db_fd, db_path = tempfile.mkstemp(suffix='.db')

    app = create_app({
        'TESTING': True,
        'DATABASE_URL': f'sqlite:///{db_path}',
        'SECRET_KEY': 'test-secret-key',
        'LEDGER_RETRY_BACKOFF_SECONDS': 0.0,
        'STORE_TIMEZONE': 'UTC',
    })

    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()

    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def client(app):
    """A test client for the app."""
    return app.test_client()


@pytest.fixture
def runner(app):
    """A test runner for the app's Click commands."""
    return app.test_cli_runner()


@pytest.fixture
def app_context(app):
    """Provide an application context for tests that call services directly."""
    with app.app_context():
        yield


@pytest.fixture
def db_session(app_context):
    """The scoped session, rolled back after the test."""
    yield db.session
    db.session.rollback()


@pytest.fixture
def actors():
    """One actor per role, plus a second manager and counter for four-eyes rules."""
    return {
        'clerk': Actor('clerk-1', 'clerk'),
        'counter': Actor('counter-1', 'counter'),
        'counter_2': Actor('counter-2', 'counter'),
        'manager': Actor('manager-1', 'manager'),
        'manager_2': Actor('manager-2', 'manager'),
        'admin': Actor('admin-1', 'admin'),
    }


@pytest.fixture
def make_product(app):
    """Create a product and load its opening stock through the ledger."""
    sequence = itertools.count(1)

    def _make(quantity=0, **overrides):
        number = next(sequence)
        fields = {
            'sku': f'SKU-{number:04d}',
            'name': f'Test Product {number}',
            'base_price': Decimal('10.00'),
            'cost_price': Decimal('4.00'),
            'tax_rate': Decimal('0.00'),
            'category': 'general',
            'location': 'A1',
            'reorder_level': 20,
        }
        fields.update(overrides)
        product = Product(**fields)
        db.session.add(product)
        db.session.commit()
        if quantity:
            post_adjustment(
                product.id,
                quantity,
                LedgerContext(adjustment_type='initial', reason='Opening stock', actor_id='seed'),
            )
            db.session.commit()
        return product

    return _make


@pytest.fixture
def make_terminal(app):
    sequence = itertools.count(1)

    def _make(**overrides):
        number = next(sequence)
        fields = {
            'terminal_number': f'T{number:02d}',
            'terminal_name': f'Register {number}',
            'location': 'Front',
        }
        fields.update(overrides)
        terminal = Terminal(**fields)
        db.session.add(terminal)
        db.session.commit()
        return terminal

    return _make


@pytest.fixture
def keys():
    """Fresh idempotency keys: ``keys()`` -> 'key-1', 'key-2', ..."""
    sequence = itertools.count(1)
    return lambda prefix='key': f'{prefix}-{next(sequence)}'


@pytest.fixture
def headers():
    """Gateway identity headers: ``headers('manager-1', 'manager', key='k1')``."""

    def _headers(actor_id='clerk-1', role='clerk', key=None):
        values = {'X-Actor-Id': actor_id, 'X-Actor-Role': role}
        if key:
            values['Idempotency-Key'] = key
        return values

    return _headers
