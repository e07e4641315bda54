"""Operator commands, registered on the app's Flask CLI."""
from __future__ import annotations

import click
from flask import Flask
from flask.cli import FlaskGroup

from cleanbox.errors import CleanBoxError
from cleanbox.extensions import get_services
from cleanbox.models import create_scan_job, ensure_tables, get_active_scan_job, get_email_account
from cleanbox.services import maintenance
from cleanbox.services.jobs import run_scan_job, scan_auto


def register_commands(app: Flask) -> None:
    @app.cli.command("init-db")
    def init_db_command() -> None:
        """Create the database tables."""
        ensure_tables()
        click.echo(f"Initialized database at {app.config['DATABASE_PATH']}")

    @app.cli.command("scan")
    @click.argument("account_id", type=int)
    def scan_command(account_id: int) -> None:
        """Scan one account now, without the background queue."""
        if get_email_account(account_id) is None:
            raise click.ClickException(f"Email account {account_id} not found")
        if get_active_scan_job(account_id):
            raise click.ClickException(f"A scan is already in progress for account {account_id}")
        scan_job = create_scan_job(account_id)
        try:
            scanned = run_scan_job(get_services(), scan_job["id"])
        except CleanBoxError as exc:
            raise click.ClickException(f"Scan job {scan_job['id']} failed: {exc.message}") from exc
        click.echo(f"Scan job {scan_job['id']} completed: {scanned} emails scanned")

    @app.cli.command("scan-auto")
    @click.option("--wait/--no-wait", default=True, help="Wait for the queued scans to finish.")
    @click.option("--timeout", default=3600.0, show_default=True, help="Seconds to wait for the queue.")
    def scan_auto_command(wait: bool, timeout: float) -> None:
        """Queue a scan for every account with auto-scan enabled."""
        services = get_services()
        created = scan_auto(services)
        click.echo(f"Created {len(created)} scan jobs")
        if wait and created:
            if not services.job_queue.wait_until_idle(timeout=timeout):
                raise click.ClickException(f"Scans still running after {timeout:g}s")
            click.echo("All scans finished")

    @app.cli.command("rebuild-packages")
    @click.argument("account_id", type=int)
    def rebuild_packages_command(account_id: int) -> None:
        """Delete an account's packages and rebuild them from its events."""
        if get_email_account(account_id) is None:
            raise click.ClickException(f"Email account {account_id} not found")
        created = get_services().aggregator.rebuild_packages(account_id)
        click.echo(f"Rebuilt {created} packages for account {account_id}")

    @app.cli.command("reprocess-event")
    @click.argument("email_id", type=int)
    def reprocess_event_command(email_id: int) -> None:
        """Re-extract the package event of one email."""
        try:
            updated = maintenance.reprocess_event(get_services(), email_id)
        except CleanBoxError as exc:
            raise click.ClickException(exc.message) from exc
        if updated:
            click.echo(f"Reprocessed package event for email {email_id}")
        else:
            click.echo(f"Email {email_id} produced no package event")

    @app.cli.command("regenerate-events")
    @click.argument("account_id", type=int)
    @click.option("--delay", default=maintenance.REGENERATE_DELAY_SECONDS, show_default=True,
                  help="Seconds to pause between emails.")
    def regenerate_events_command(account_id: int, delay: float) -> None:
        """Re-extract every package event of an account."""
        try:
            result = maintenance.regenerate_events(get_services(), account_id, delay=delay)
        except CleanBoxError as exc:
            raise click.ClickException(exc.message) from exc
        click.echo(f"Success: {result.success}")
        click.echo(f"Skipped: {result.skipped}")
        click.echo(f"Errors: {result.errors}")

    @app.cli.command("refetch-body")
    @click.argument("email_id", type=int)
    def refetch_body_command(email_id: int) -> None:
        """Fetch an email's body from Gmail again."""
        try:
            length = maintenance.refetch_body(get_services(), email_id)
        except CleanBoxError as exc:
            raise click.ClickException(exc.message) from exc
        if length is None:
            raise click.ClickException("Failed to fetch message from Gmail")
        click.echo(f"Updated email {email_id}: body is now {length} chars")


def _create_cli_app() -> Flask:
    from cleanbox.app import create_app

    return create_app()


@click.group(cls=FlaskGroup, create_app=_create_cli_app)
def main() -> None:
    """CleanBox management commands."""
