# Overview: Flask CLI command groups for bootstrap, queue maintenance, and payment housekeeping.

# backend/tillpoint/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Create any missing tables (idempotent). Use `flask db upgrade` for migrated deployments.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Offline sync queue:
# - python -m flask sync status
#   Show item counts per status.
# - python -m flask sync drain [--limit 50]
#   Run one drain pass now.
# - python -m flask sync worker [--interval 30]
#   Drain continuously until interrupted.
# - python -m flask sync purge
#   Delete completed and dead-lettered items older than SYNC_RETENTION_DAYS.
#
# Payments:
# - python -m flask payments expire
#   Fail M-Pesa payments that stayed pending longer than PAYMENT_PENDING_TIMEOUT_SECONDS.

import time

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services.sync_worker import SyncWorker
from .services.wiring import build_components, close_mpesa_client


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create all tables that do not exist yet."""
    click.echo("BUILD  Creating missing tables...")
    db.create_all()
    click.echo("PASS Schema ready.")


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


@click.group('sync')
def sync_group():
    """Offline sync queue commands."""


@sync_group.command('status')
@with_appcontext
def sync_status():
    """Show queue counts per status."""
    counts = build_components().sync_queue.status_counts()
    for status, count in counts.items():
        click.echo(f"{status:<12} {count}")


@sync_group.command('drain')
@click.option('--limit', type=int, default=None, help='Maximum items to claim (default SYNC_DRAIN_BATCH_SIZE)')
@with_appcontext
def sync_drain(limit):
    """Run one drain pass."""
    report = build_components().sync_queue.drain(limit)
    if report is None:
        click.echo("WARN Another drain pass is running; nothing done.")
        return

    click.echo(
        f"PASS claimed={report.claimed} completed={report.completed} "
        f"retried={report.retried} skipped={report.skipped} released={report.released}"
    )
    for err in report.dead_lettered:
        click.echo(f"FAIL {err.message}: {err.details.get('last_error')}")


@sync_group.command('worker')
@click.option('--interval', type=float, default=None, help='Seconds between passes (default SYNC_DRAIN_INTERVAL_SECONDS)')
@click.option('--no-expire', is_flag=True, help='Do not expire stale pending payments')
@with_appcontext
def sync_worker(interval, no_expire):
    """Drain continuously until interrupted (Ctrl+C)."""
    app = current_app._get_current_object()
    worker = SyncWorker(app, interval, expire_payments=not no_expire)
    worker.start()
    click.echo(f"START Sync worker running every {worker.interval}s. Press Ctrl+C to stop.")
    try:
        while worker.running:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nSTOP Stopping sync worker...")
    finally:
        worker.stop()
        close_mpesa_client(app)


@sync_group.command('purge')
@with_appcontext
def sync_purge():
    """Delete finished items older than the retention window."""
    queue = build_components().sync_queue
    purged = queue.purge()
    click.echo(f"Deleted {purged} sync items older than {queue.retention.days} days.")


@click.group('payments')
def payments_group():
    """Payment housekeeping commands."""


@payments_group.command('expire')
@with_appcontext
def expire_payments():
    """Fail pending M-Pesa payments past the timeout."""
    expired = build_components().orchestrator.expire_pending_payments()
    if not expired:
        click.echo("No pending payments past the timeout.")
        return
    click.echo(f"Expired {len(expired)} payment(s): {', '.join(str(p) for p in expired)}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(payments_group)
