# Overview: Flask CLI command group for till bootstrap, inspection, and maintenance.

# backend/pharmapos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask till <command> [options]
#
# Bootstrap:
# - python -m flask till init-db
#   Create the local tables (cache, held carts, outbox) if missing.
#
# Offline outbox:
# - python -m flask till outbox [--pharmacy-id ID] [--status FAILED]
#   List offline sales waiting to sync.
# - python -m flask till sync --token "<cashier access token>" [--pharmacy-id ID] [--skip-failed]
#   Replay the outbox against the server, oldest first.
#
# Held carts:
# - python -m flask till held list --pharmacy-id ID [--branch-id ID]
# - python -m flask till held clear [--pharmacy-id ID] --yes
#
# Inventory cache:
# - python -m flask till cache clear [--pharmacy-id ID] --yes
#   Drop the offline stock cache (rebuilt by the next online fetch).

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import held_service, offline_sync_service
from .services.backend_client import SupabaseClient
from .services.inventory_service import clear_cache


@click.group('till')
def till_group():
    """Till maintenance commands."""


@till_group.command('init-db')
@with_appcontext
def init_db():
    """Create local tables if missing (idempotent)."""
    db.create_all()
    click.echo("PASS Local database ready.")


@till_group.command('outbox')
@click.option('--pharmacy-id', help='Filter by pharmacy ID')
@click.option('--status', type=click.Choice(['PENDING', 'SYNCING', 'FAILED']), help='Filter by status')
@with_appcontext
def list_outbox_cli(pharmacy_id, status):
    """List offline sales in the outbox."""
    rows = offline_sync_service.list_outbox(pharmacy_id, status)
    if not rows:
        click.echo("Outbox is empty.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Receipt':<14} {'Pharmacy':<20} {'Status':<8} {'Tries':<6} {'Total':<12} {'Last error'}")
    click.echo("="*100)
    for row in rows:
        total = f"{row.total_cents / 100:,.2f}"
        error = (row.last_error or "-")[:40]
        click.echo(f"{row.id:<5} {row.local_receipt_id:<14} {row.pharmacy_id[:20]:<20} {row.status:<8} "
                   f"{row.attempts:<6} {total:<12} {error}")
    click.echo("="*100 + "\n")


@till_group.command('sync')
@click.option('--token', envvar='TILL_ACCESS_TOKEN', required=True, help="Cashier's backend access token")
@click.option('--pharmacy-id', help='Only sync this pharmacy')
@click.option('--skip-failed', is_flag=True, help='Do not retry sales the server rejected before')
@with_appcontext
def sync_cli(token, pharmacy_id, skip_failed):
    """Replay offline sales against the server."""
    with SupabaseClient.from_config(current_app.config, access_token=token) as client:
        report = offline_sync_service.sync_offline_sales(
            client,
            pharmacy_id=pharmacy_id,
            include_failed=not skip_failed,
        )

    for synced in report.synced:
        click.echo(f"PASS {synced['local_receipt_id']} -> {synced['receipt_id']}")
    for failed in report.failed:
        click.echo(f"FAIL {failed['local_receipt_id']}: {failed['error']}")
    if report.stopped_reason:
        click.echo(f"WARN Stopped: {report.stopped_reason}")
    click.echo(f"{report.remaining} sale(s) still waiting.")


@till_group.group('held')
def held_group():
    """Held cart commands."""


@held_group.command('list')
@click.option('--pharmacy-id', required=True, help='Pharmacy ID')
@click.option('--branch-id', help='Branch ID (omit for main branch)')
@with_appcontext
def list_held_cli(pharmacy_id, branch_id):
    """List held carts, newest first."""
    held = held_service.list_held(pharmacy_id, branch_id)
    if not held:
        click.echo("No held carts.")
        return
    for h in held:
        item_count = h.to_dict()["item_count"]
        click.echo(f"{h.id:<32} {h.customer_name[:24]:<24} {item_count:>4} items  "
                   f"{h.total_cents / 100:>12,.2f}  {str(h.held_at)[:19]}")


@held_group.command('clear')
@click.option('--pharmacy-id', help='Only this pharmacy (default: all)')
@click.option('--branch-id', help='Only this branch')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def clear_held_cli(pharmacy_id, branch_id, yes):
    """Discard held carts."""
    if not yes:
        click.confirm("WARN This will discard held carts. Are you sure?", abort=True)
    deleted = held_service.clear_all(pharmacy_id, branch_id)
    click.echo(f"Deleted {deleted} held cart(s).")


@till_group.group('cache')
def cache_group():
    """Offline inventory cache commands."""


@cache_group.command('clear')
@click.option('--pharmacy-id', help='Only this pharmacy (default: all)')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def clear_cache_cli(pharmacy_id, yes):
    """Drop cached stock rows."""
    if not yes:
        click.confirm("WARN Offline selling needs this cache. Clear it?", abort=True)
    deleted = clear_cache(pharmacy_id)
    click.echo(f"Deleted {deleted} cached item(s).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(till_group)
