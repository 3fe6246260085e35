# Overview: Flask CLI command groups for bootstrap, stock maintenance and ledger monitoring.

# backend/topup/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py and STOCK_ENCRYPTION_KEY to a Fernet key. The app
#   refuses to load without one, so create the first key with
#   python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
#   and later rotation keys with: python -m flask stock generate-key
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock:
# - python -m flask stock list [--bucket-id B] [--type PIN]
# - python -m flask stock stats
# - python -m flask stock low [--threshold 10]
# - python -m flask stock reconcile [--pool-id 1] [--fix]
#   Recount item states and compare with the pool counters.
# - python -m flask stock rotate-keys
#   Re-encrypt payloads still under a previous key.
# - python -m flask stock purge --yes
#   Delete every pool and item.
#
# Ledgers:
# - python -m flask ledger list --kind credit
# - python -m flask ledger overdue [--as-of 2025-01-31] [--suspend]
# - python -m flask ledger low-balance --kind kickback

import click
from flask.cli import with_appcontext

from .crypto import generate_key
from .extensions import db
from .money import format_cents
from .services import ledger_service, stock_service
from .time_utils import parse_as_of, to_utc_z


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables (use migrations for schema changes)."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including every stock payload and ledger history!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('stock')
def stock_group():
    """Credential stock inspection and maintenance commands."""


@stock_group.command('list')
@click.option('--bucket-id', default=None, help='Filter by inventory bucket')
@click.option('--type', 'credential_type', default=None, help='PIN or ESIM_PROFILE')
@with_appcontext
def list_pools(bucket_id, credential_type):
    """List stock pools with their counters."""
    pools = stock_service.list_pools(bucket_id=bucket_id, credential_type=credential_type)
    if not pools:
        click.echo("No stock pools found.")
        return

    click.echo("\n" + "="*100)
    click.echo(
        f"{'ID':<5} {'Name':<30} {'Bucket':<15} {'Type':<13} {'Status':<10} "
        f"{'Avail':>6} {'Resv':>6} {'Used':>6} {'Ret':>6} {'Total':>6}"
    )
    click.echo("="*100)
    for p in pools:
        click.echo(
            f"{p.id:<5} {p.name[:30]:<30} {p.bucket_id[:15]:<15} {p.credential_type:<13} {p.status:<10} "
            f"{p.available_quantity:>6} {p.reserved_quantity:>6} {p.used_quantity:>6} "
            f"{p.retired_quantity:>6} {p.total_quantity:>6}"
        )
    click.echo("="*100 + "\n")


@stock_group.command('stats')
@with_appcontext
def stock_stats():
    """Usage statistics per credential type."""
    stats = stock_service.usage_statistics()
    click.echo(f"Pools: {stats['total_pools']}  Low-stock alerts: {stats['low_stock_alerts']}")
    for ctype, row in stats["by_type"].items():
        click.echo(
            f"  {ctype:<13} pools={row['pools']} total={row['total']} available={row['available']} "
            f"used={row['used']} reserved={row['reserved']} retired={row['retired']} "
            f"usage={row['usage_percentage']}%"
        )


@stock_group.command('low')
@click.option('--threshold', type=int, default=None, help='Defaults to LOW_STOCK_THRESHOLD')
@with_appcontext
def low_stock(threshold):
    """List pools at or below the low-stock threshold."""
    pools = stock_service.low_stock_pools(threshold)
    if not pools:
        click.echo("No low-stock pools.")
        return
    for p in pools:
        click.echo(f"WARN pool {p.id} '{p.name}' ({p.bucket_id}/{p.credential_type}): {p.available_quantity} available")


@stock_group.command('reconcile')
@click.option('--pool-id', type=int, default=None)
@click.option('--fix', is_flag=True, help='Rewrite drifted counters from the recount')
@with_appcontext
def reconcile(pool_id, fix):
    """Compare pool counters with a full recount of item states."""
    drift = stock_service.reconcile_pool_counters(pool_id, fix=fix)
    if not drift:
        click.echo("PASS All pool counters match their items.")
        return
    for entry in drift:
        click.echo(f"FAIL pool {entry['pool_id']}: stored={entry['stored']} counted={entry['counted']}")
    if fix:
        click.echo(f"FIXED {len(drift)} pool(s).")
    else:
        click.echo("Run again with --fix to repair.")


@stock_group.command('rotate-keys')
@with_appcontext
def rotate_keys():
    """Re-encrypt every payload under the current STOCK_ENCRYPTION_KEY."""
    result = stock_service.rotate_pool_secrets()
    click.echo(f"Rotated {result['rotated']} payload(s); {result['unreadable']} unreadable.")


@stock_group.command('purge')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def purge(yes):
    """DANGER: Delete every stock pool and item."""
    if not yes:
        click.confirm("WARN This will DELETE ALL STOCK. Are you sure?", abort=True)
    count = stock_service.delete_all_pools()
    click.echo(f"DELETE  Removed {count} pool(s).")


@stock_group.command('generate-key')
def generate_key_cmd():
    """Print a fresh Fernet key for STOCK_ENCRYPTION_KEY."""
    click.echo(generate_key())


@click.group('ledger')
def ledger_group():
    """Credit and kickback ledger monitoring commands."""


@ledger_group.command('list')
@click.option('--kind', type=click.Choice(['credit', 'kickback'], case_sensitive=False), required=True)
@click.option('--status', default=None)
@with_appcontext
def list_accounts(kind, status):
    """List retailer accounts of one ledger."""
    accounts = ledger_service.list_accounts(kind, status=status)
    if not accounts:
        click.echo("No accounts found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'Retailer':<20} {'Status':<15} {'Limit':>12} {'Used':>12} {'Available':>12} {'Outstanding':>12}")
    click.echo("="*90)
    for a in accounts:
        click.echo(
            f"{a.retailer_id[:20]:<20} {a.status:<15} {format_cents(a.limit_cents):>12} "
            f"{format_cents(a.used_cents):>12} {format_cents(a.available_cents):>12} "
            f"{format_cents(a.outstanding_cents):>12}"
        )
    click.echo("="*90 + "\n")


@ledger_group.command('overdue')
@click.option('--as-of', default=None, help='ISO date/datetime, defaults to now')
@click.option('--suspend', is_flag=True, help='Suspend accounts overdue beyond the grace period')
@click.option('--grace-days', type=int, default=None, help='Defaults to OVERDUE_GRACE_DAYS')
@with_appcontext
def overdue(as_of, suspend, grace_days):
    """List overdue credit accounts, optionally suspending them."""
    try:
        as_of_dt = parse_as_of(as_of)
    except ValueError:
        raise click.BadParameter("must be an ISO-8601 date or datetime", param_hint="--as-of")

    accounts = ledger_service.overdue_accounts(as_of_dt)
    if not accounts:
        click.echo("No overdue accounts.")
        return
    for a in accounts:
        click.echo(
            f"WARN {a.retailer_id}: {format_cents(a.outstanding_cents)} outstanding, due {to_utc_z(a.next_due_at)}"
        )

    if suspend:
        suspended = ledger_service.suspend_overdue(as_of_dt, grace_days, operator_id="cli")
        click.echo(f"SUSPENDED {len(suspended)} account(s).")


@ledger_group.command('low-balance')
@click.option('--kind', type=click.Choice(['credit', 'kickback'], case_sensitive=False), default='credit')
@with_appcontext
def low_balance(kind):
    """List active accounts at or below their low-balance threshold."""
    accounts = ledger_service.low_balance_accounts(kind)
    if not accounts:
        click.echo("No low-balance accounts.")
        return
    for a in accounts:
        click.echo(
            f"WARN {a.retailer_id}: available {format_cents(a.available_cents)} "
            f"<= threshold {format_cents(a.low_balance_threshold_cents)}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(ledger_group)
