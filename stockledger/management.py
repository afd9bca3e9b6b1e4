"""
Management commands for store operations and maintenance
"""
import click
from flask.cli import with_appcontext

from .extensions import db
from .models import SNAPSHOT_TYPES, Terminal
from .services.inventory_ledger import validate_ledger_consistency
from .services.snapshot_service import SnapshotService


@click.command('take-snapshot')
@click.option('--type', 'snapshot_type', default='end_of_day', type=click.Choice(SNAPSHOT_TYPES),
              help='Snapshot type to record')
@click.option('--product-id', 'product_ids', multiple=True, type=int,
              help='Limit the snapshot to these products (repeatable)')
@with_appcontext
def take_snapshot_command(snapshot_type, product_ids):
    """Capture current stock of every active product"""
    try:
        snapshot_key = SnapshotService.take_snapshot(snapshot_type, product_ids=product_ids or None)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    rows = SnapshotService.get_snapshot(snapshot_key)
    click.echo(f"✅ Snapshot {snapshot_key}: {len(rows)} product(s)")


@click.command('verify-ledger')
@click.option('--product-id', type=int, default=None, help='Check a single product')
@with_appcontext
def verify_ledger_command(product_id):
    """Fold the adjustment log and compare it with live stock"""
    issues = validate_ledger_consistency(product_id)
    if not issues:
        click.echo("✅ Ledger consistent")
        return
    for issue in issues:
        click.echo(f"❌ product {issue.product_id} {issue.adjustment_number or '-'}: {issue.message}")
    raise click.ClickException(f"{len(issues)} ledger issue(s) found")


@click.command('snapshot-drift')
@click.argument('snapshot_key')
@with_appcontext
def snapshot_drift_command(snapshot_key):
    """Compare a snapshot plus later ledger changes with live stock"""
    drifted = [row for row in SnapshotService.snapshot_drift(snapshot_key) if row.drift]
    if not drifted:
        click.echo(f"✅ No drift since {snapshot_key}")
        return
    for row in drifted:
        click.echo(
            f"❌ product {row.product_id}: expected {row.expected_quantity}, "
            f"actual {row.actual_quantity} (drift {row.drift:+d})"
        )
    raise click.ClickException(f"{len(drifted)} product(s) drifted")


@click.command('register-terminal')
@click.argument('terminal_number')
@click.argument('terminal_name')
@click.option('--location', default=None, help='Where the register is installed')
@with_appcontext
def register_terminal_command(terminal_number, terminal_name, location):
    """Register a point-of-sale terminal"""
    if Terminal.query.filter_by(terminal_number=terminal_number).first() is not None:
        raise click.ClickException(f"Terminal {terminal_number} already exists")
    terminal = Terminal(terminal_number=terminal_number, terminal_name=terminal_name, location=location)
    try:
        db.session.add(terminal)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    click.echo(f"✅ Registered terminal {terminal.terminal_number} (id {terminal.id})")


def register_commands(app):
    """Register CLI commands"""
    app.cli.add_command(take_snapshot_command)
    app.cli.add_command(verify_ledger_command)
    app.cli.add_command(snapshot_drift_command)
    app.cli.add_command(register_terminal_command)
