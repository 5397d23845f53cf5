# Overview: Flask CLI command groups for bootstrap, till sessions and inventory maintenance.

# backend/brewpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP (e.g. FLASK_APP="brewpos:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Till sessions:
# - python -m flask sessions open
# - python -m flask sessions close <session_id>
# - python -m flask sessions current
#
# Inventory:
# - python -m flask inventory restock --ingredient-id 1 --quantity 5 --unit-cost-cents 120
#   Receive a new batch of an ingredient.
# - python -m flask inventory audit
#   Check current_stock == SUM(batch quantities) for every ingredient.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import session_service
from .services.batch_service import BatchError, receive_batch
from .services.inventory_service import audit_stock_invariant, get_stock_summary
from .services.session_service import SessionError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Database schema ready.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('sessions')
def sessions_group():
    """Till session commands."""


@sessions_group.command('open')
@with_appcontext
def open_session_cli():
    try:
        session = session_service.open_session()
    except SessionError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Session {session.id} opened at {session.to_dict()['opened_at']}")


@sessions_group.command('close')
@click.argument('session_id', type=int)
@with_appcontext
def close_session_cli(session_id):
    try:
        session = session_service.close_session(session_id)
    except SessionError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Session {session.id} closed")

    summary = session_service.get_session_summary(session.id)
    click.echo(f"  Sales: {summary['sales_count']}  Total: {summary['total_cents']} cents")
    for method, totals in sorted(summary["by_payment_method"].items()):
        click.echo(f"    {method:<16} {totals['count']:>5}  {totals['total_cents']:>10} cents")


@sessions_group.command('current')
@with_appcontext
def current_session_cli():
    session = session_service.get_current_session()
    if session is None:
        click.echo("No open session.")
        return
    click.echo(f"Session {session.id} open since {session.to_dict()['opened_at']}")


@click.group('inventory')
def inventory_group():
    """Ingredient stock commands."""


@inventory_group.command('restock')
@click.option('--ingredient-id', type=int, required=True, help='Ingredient ID')
@click.option('--quantity', required=True, help='Quantity received (decimal)')
@click.option('--unit-cost-cents', type=int, default=0, show_default=True, help='Cost per unit in cents')
@click.option('--received-at', default=None, help='ISO-8601 receipt time (defaults to now)')
@with_appcontext
def restock_cli(ingredient_id, quantity, unit_cost_cents, received_at):
    try:
        batch = receive_batch(
            ingredient_id=ingredient_id,
            quantity=quantity,
            unit_cost_cents=unit_cost_cents,
            received_at=received_at,
        )
    except BatchError as e:
        raise click.ClickException(str(e))

    summary = get_stock_summary(ingredient_id)
    click.echo(f"PASS Batch {batch.id} received: {batch.quantity} "
               f"(stock now {summary['ingredient']['current_stock']})")


@inventory_group.command('audit')
@with_appcontext
def audit_cli():
    """Exit non-zero when any ingredient's stock disagrees with its batches."""
    mismatches = audit_stock_invariant()
    if not mismatches:
        click.echo("PASS All ingredient stock matches batch totals.")
        return

    for m in mismatches:
        click.echo(f"FAIL {m['name']} (id {m['ingredient_id']}): "
                   f"current_stock={m['current_stock']} batches={m['batch_total']}")
    raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sessions_group)
    app.cli.add_command(inventory_group)
