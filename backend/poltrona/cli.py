# Overview: Flask CLI command groups for bootstrap, registry inspection, and scheduled sweeps.

# backend/poltrona/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Chair registry:
# - python -m flask chairs list [--active-only]
#   List chairs with price, session state and derived presence.
# - python -m flask chairs create --chair-id p1 --ip 192.168.0.50 --price 10.00 --location "Shopping Centro"
#   Register a chair (duration defaults to 900 seconds).
#
# Scheduled sweeps (cron, systemd timers, or the foreground loop):
# - python -m flask sweeps poll
#   Re-check recent pending payments against the processor once.
# - python -m flask sweeps expire-sessions
#   Close sessions whose end time has passed once.
# - python -m flask sweeps run [--poll-interval 30] [--expiry-interval 60]
#   Run both sweeps on their intervals until Ctrl+C / SIGTERM.
#
# Processor:
# - python -m flask processor test
#   Validate MERCADOPAGO_ACCESS_TOKEN against the processor.

import signal
import threading
import time

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import ReconciliationError
from .extensions import db
from .services import chair_service, polling_service, presence_service, session_service
from .services.mercadopago import get_client
from .time_utils import utcnow

CLI_ACTOR = "admin:cli"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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
    click.echo("PASS Database reset complete")


@click.group('chairs')
def chairs_group():
    """Chair registry inspection and bootstrap."""


@chairs_group.command('list')
@click.option('--active-only', is_flag=True, help='Hide deactivated chairs')
@with_appcontext
def list_chairs(active_only):
    """List chairs with price, session state and presence."""
    chairs = chair_service.list_chairs(include_inactive=not active_only)
    if not chairs:
        click.echo("No chairs registered.")
        return

    presence = {entry["chair_id"]: entry for entry in presence_service.list_statuses()}
    now = utcnow()
    click.echo(f"{'CHAIR':<12} {'ADDRESS':<22} {'PRICE':>8} {'ACTIVE':<7} {'ONLINE':<7} SESSION")
    for chair in chairs:
        remaining = session_service.remaining_seconds(chair, now)
        session = f"{remaining}s left" if remaining else "-"
        online = "yes" if presence.get(chair.chair_id, {}).get("online") else "no"
        click.echo(
            f"{chair.chair_id:<12} {chair.ip_address:<22} {chair.price_cents / 100:>8.2f} "
            f"{'yes' if chair.is_active else 'no':<7} {online:<7} {session}"
        )


@chairs_group.command('create')
@click.option('--chair-id', required=True, help='Business id printed on the chair (e.g. p1)')
@click.option('--ip', 'ip_address', required=True, help='Controller address, IPv4[:port]')
@click.option('--price', required=True, help='Price in reais, e.g. 10.00')
@click.option('--location', required=True, help='Location label')
@click.option('--duration', 'duration_seconds', type=int, default=900, show_default=True, help='Session length in seconds')
@with_appcontext
def create_chair(chair_id, ip_address, price, location, duration_seconds):
    """Register a chair."""
    try:
        chair = chair_service.create_chair(
            {
                "chair_id": chair_id,
                "ip_address": ip_address,
                "price": price,
                "location": location,
                "duration_seconds": duration_seconds,
            },
            actor=CLI_ACTOR,
        )
    except ReconciliationError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created chair {chair.chair_id} -> {chair.public_payment_url}")


@click.group('sweeps')
def sweeps_group():
    """Polling reconciler and session expiry."""


def _run_poll() -> dict:
    summary = polling_service.run_sweep()
    return summary.to_dict()


def _run_expiry() -> list:
    return session_service.expire_sessions()


@sweeps_group.command('poll')
@with_appcontext
def poll_once():
    """Re-check recent pending payments once."""
    try:
        summary = _run_poll()
    except ReconciliationError as e:
        raise click.ClickException(e.message)
    click.echo(
        f"PASS checked={summary['checked']} approved={summary['approved']} rejected={summary['rejected']} "
        f"already_resolved={summary['already_resolved']} failed={summary['failed']}"
    )


@sweeps_group.command('expire-sessions')
@with_appcontext
def expire_once():
    """Close lapsed sessions once."""
    expired = _run_expiry()
    click.echo(f"PASS cleaned={len(expired)}" + (f" ({', '.join(expired)})" if expired else ""))


@sweeps_group.command('run')
@click.option('--poll-interval', type=int, default=None, help='Seconds between polling sweeps (POLL_INTERVAL_SECONDS)')
@click.option('--expiry-interval', type=int, default=None, help='Seconds between expiry sweeps (EXPIRY_INTERVAL_SECONDS)')
@with_appcontext
def run_forever(poll_interval, expiry_interval):
    """
    Foreground scheduler for both sweeps.

    Each sweep is independent: a failing poll does not stop expiry and vice versa.
    Overlap with other schedulers is safe; the database decides every race.
    """
    poll_interval = poll_interval or current_app.config["POLL_INTERVAL_SECONDS"]
    expiry_interval = expiry_interval or current_app.config["EXPIRY_INTERVAL_SECONDS"]
    stop = threading.Event()

    def _request_stop(signum, frame):
        click.echo(f"\nSTOP Received signal {signum}, finishing current sweep...")
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    click.echo(f"START Sweeps running: poll every {poll_interval}s, expiry every {expiry_interval}s")
    next_poll = next_expiry = time.monotonic()

    while not stop.is_set():
        now = time.monotonic()
        if now >= next_poll:
            try:
                click.echo(f"POLL {_run_poll()}")
            except ReconciliationError as e:
                current_app.logger.error("Polling sweep failed: %s", e.message)
            except Exception:
                db.session.rollback()
                current_app.logger.exception("Polling sweep crashed")
            next_poll = now + poll_interval

        if now >= next_expiry:
            try:
                expired = _run_expiry()
                if expired:
                    click.echo(f"EXPIRE {', '.join(expired)}")
            except Exception:
                db.session.rollback()
                current_app.logger.exception("Expiry sweep crashed")
            next_expiry = now + expiry_interval

        db.session.remove()
        stop.wait(max(0.0, min(next_poll, next_expiry) - time.monotonic()))

    click.echo("PASS Sweeps stopped")


@click.group('processor')
def processor_group():
    """Payment processor diagnostics."""


@processor_group.command('test')
@with_appcontext
def test_processor():
    """Validate the processor access token."""
    try:
        result = get_client().test_connection()
    except ReconciliationError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Processor reachable in {result['latency_ms']}ms")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(chairs_group)
    app.cli.add_command(sweeps_group)
    app.cli.add_command(processor_group)
