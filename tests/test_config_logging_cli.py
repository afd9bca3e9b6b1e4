import logging
import re
from decimal import Decimal

import pytest
from sqlalchemy import text

from stockledger import create_app
from stockledger.config import EnvReader
from stockledger.extensions import db
from stockledger.logging_config import PiiRedactionFilter
from stockledger.models import Terminal


class TestEnvReader:

    def test_typed_values(self):
        reader = EnvReader({
            'WORKERS': ' 4 ',
            'RATIO': '0.25',
            'COST': '500.00',
            'ENABLED': 'Yes',
            'ROLES': 'Manager, admin,,',
            'EMPTY': '   ',
        })

        assert reader.int('WORKERS') == 4
        assert reader.float('RATIO') == 0.25
        assert reader.decimal('COST') == Decimal('500.00')
        assert reader.bool('ENABLED') is True
        assert reader.csv('ROLES') == ('manager', 'admin')
        assert reader.str('EMPTY', 'fallback') == 'fallback'
        assert reader.warnings == []

    def test_bad_values_fall_back_with_warnings(self):
        reader = EnvReader({'WORKERS': 'four', 'ENABLED': 'maybe', 'COST': 'lots'})

        assert reader.int('WORKERS', 2) == 2
        assert reader.bool('ENABLED', False) is False
        assert reader.decimal('COST', '1') == Decimal('1')
        assert len(reader.warnings) == 3
        assert 'WORKERS' in reader.warnings[0]

    def test_testing_flag_selects_testing_config(self, tmp_path):
        app = create_app({'TESTING': True, 'DATABASE_URL': f"sqlite:///{tmp_path / 'x.db'}"})

        assert app.config['RATELIMIT_ENABLED'] is False
        assert app.config['SQLALCHEMY_DATABASE_URI'].endswith('x.db')
        assert 'pool_size' not in app.config['SQLALCHEMY_ENGINE_OPTIONS']


class TestPiiRedaction:

    def _filtered(self, message, *args):
        record = logging.LogRecord('stockledger', logging.INFO, __file__, 1, message, args, None)
        PiiRedactionFilter().filter(record)
        return record.getMessage()

    def test_masks_emails_and_credentials(self):
        message = self._filtered('Receipt for jane.doe@example.com sent, api_key=abc123 Bearer tok.en')

        assert 'jane.doe@example.com' not in message
        assert '[REDACTED_EMAIL]' in message
        assert 'abc123' not in message
        assert 'Bearer [REDACTED]' in message

    def test_masks_card_numbers_but_keeps_last_four(self):
        message = self._filtered('Payment reference %s accepted', '4111 1111 1111 1234')

        assert '[CARD ****1234]' in message
        assert '4111' not in message

    def test_leaves_transaction_numbers_alone(self):
        assert self._filtered('Transaction T01-20260402-0001 completed') == 'Transaction T01-20260402-0001 completed'


class TestCommands:

    def test_verify_ledger_when_consistent(self, app, runner, make_product):
        with app.app_context():
            make_product(quantity=5)

        result = runner.invoke(args=['verify-ledger'])

        assert result.exit_code == 0
        assert 'Ledger consistent' in result.output

    def test_register_terminal(self, app, runner):
        result = runner.invoke(args=['register-terminal', 'T09', 'Garden centre', '--location', 'Outdoor'])
        duplicate = runner.invoke(args=['register-terminal', 'T09', 'Garden centre'])

        assert result.exit_code == 0
        assert 'Registered terminal T09' in result.output
        assert duplicate.exit_code != 0
        assert 'already exists' in duplicate.output
        with app.app_context():
            assert Terminal.query.filter_by(terminal_number='T09').one().location == 'Outdoor'

    def test_snapshot_then_drift(self, app, runner, make_product):
        with app.app_context():
            product_id = make_product(quantity=12).id

        taken = runner.invoke(args=['take-snapshot', '--type', 'daily'])
        assert taken.exit_code == 0
        snapshot_key = re.search(r'(SNAP-DAILY-\d{8}-\d{5})', taken.output).group(1)

        clean = runner.invoke(args=['snapshot-drift', snapshot_key])
        assert clean.exit_code == 0
        assert 'No drift' in clean.output

        with app.app_context():
            db.session.execute(
                text('UPDATE product SET quantity_in_stock = 20 WHERE id = :id'), {'id': product_id}
            )
            db.session.commit()

        drifted = runner.invoke(args=['snapshot-drift', snapshot_key])
        assert drifted.exit_code != 0
        assert 'drift +8' in drifted.output

        inconsistent = runner.invoke(args=['verify-ledger'])
        assert inconsistent.exit_code != 0
        assert 'ledger fold 12' in inconsistent.output

    @pytest.mark.parametrize('snapshot_type', ['hourly', 'forever'])
    def test_take_snapshot_rejects_unknown_types(self, runner, snapshot_type):
        result = runner.invoke(args=['take-snapshot', '--type', snapshot_type])

        assert result.exit_code != 0
