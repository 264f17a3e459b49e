"""Command-line interface with Rich formatting."""

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .config import Settings, configure_logging, create_example_config, load_settings
from .database import DatabaseManager
from .jobs import JOB_NAMES
from .models import BatchSummary, EndType, ExtensionResult, Frequency, SyncResult, ensure_utc, utcnow
from .recurrence import PatternDefinition, RecurrenceHorizonExtender
from .runtime import SyncRuntime
from .services.base import HearthsyncError, OperationInProgressError

console = Console()
logger = structlog.get_logger()


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return ensure_utc(value).strftime('%Y-%m-%d %H:%M UTC')


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """hearthsync - keep family calendars in step with Google Calendar.

    Cursor-based incremental sync, push notification channels and
    materialized recurring events.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        configure_logging(settings)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run the HTTP server (cron, webhook and user endpoints)."""
    try:
        import uvicorn
        uvicorn.run("hearthsync.server:create_app", factory=True, host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    settings: Settings = ctx.obj['settings']
    db = DatabaseManager(settings)
    db.init_db()
    console.print(f"[green]✓ Database initialized at {settings.database_url}[/green]")


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your actual credentials.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")
        sys.exit(1)


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            f"[red]Missing required fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Validation",
            border_style="red"
        ))
        sys.exit(1)
    else:
        console.print(Panel(
            "[green]✓ All required configuration fields are present[/green]",
            title="Configuration Validation",
            border_style="green"
        ))


@cli.command()
@click.option('--family', '-f', required=True, help='Local family ID')
@click.option('--calendar', '-c', required=True, help='Remote calendar ID (e.g. primary or an email address)')
@click.option('--name', '-n', default='', help='Display name')
@click.option('--refresh-token', required=True, help='OAuth refresh token of the Google account')
@click.option('--access-token', default=None, help='Current access token (optional)')
@click.option('--account', default=None, help='Reuse an existing linked account ID')
@click.pass_context
def link(ctx, family, calendar, name, refresh_token, access_token, account):
    """Link a Google calendar to a family."""
    settings: Settings = ctx.obj['settings']
    db = DatabaseManager(settings)
    db.init_db()

    with db.get_session() as session:
        if account and db.get_account(session, account) is not None:
            account_id = account
        else:
            account_id = db.create_account(
                session, access_token=access_token, refresh_token=refresh_token, account_id=account
            ).id
        calendar_link = db.create_calendar_link(
            session, family_id=family, account_id=account_id, remote_calendar_id=calendar, name=name
        )

    logger.info("calendar_linked", calendar_link_id=calendar_link.id, family_id=family)
    console.print(f"[green]✓ Linked {calendar} to family {family}[/green]")
    console.print(f"  Calendar link ID: [bold]{calendar_link.id}[/bold]")
    console.print(f"  Account ID: {account_id}")


@cli.command()
@click.pass_context
def status(ctx):
    """Show calendar links with their sync and channel state."""
    settings: Settings = ctx.obj['settings']
    db = DatabaseManager(settings)
    db.init_db()

    with db.get_session() as session:
        links = db.list_calendar_links(session)
        table = Table(title="Calendar Links")
        table.add_column("ID", style="cyan")
        table.add_column("Family")
        table.add_column("Calendar")
        table.add_column("Enabled")
        table.add_column("Cursor")
        table.add_column("Last Synced")
        table.add_column("Events", justify="right")
        table.add_column("Channel Expires")

        now = utcnow()
        for calendar_link in links:
            channel = db.get_channel_for_link(session, calendar_link.id)
            if calendar_link.pagination_token:
                cursor_state = "[yellow]paginating[/yellow]"
            elif calendar_link.sync_cursor:
                cursor_state = "[green]✓[/green]"
            else:
                cursor_state = "[red]none[/red]"
            if channel is None:
                channel_state = "-"
            elif ensure_utc(channel.expiration) <= now:
                channel_state = f"[red]{_format_time(channel.expiration)}[/red]"
            else:
                channel_state = _format_time(channel.expiration)
            table.add_row(
                calendar_link.id,
                calendar_link.family_id,
                calendar_link.name or calendar_link.remote_calendar_id,
                "✓" if calendar_link.sync_enabled else "✗",
                cursor_state,
                _format_time(calendar_link.last_synced_at),
                str(db.count_local_events(session, calendar_link.id)),
                channel_state,
            )

    if not links:
        console.print("[yellow]No calendars linked. Use [bold]hearthsync link[/bold] to add one.[/yellow]")
        return
    console.print(table)


def _display_sync_result(result: SyncResult) -> None:
    if result.coalesced:
        console.print("[yellow]A sync for this calendar is already running[/yellow]")
        return
    if result.error:
        console.print(Panel(result.error, title="[red]Sync Failed[/red]", border_style="red"))
        return

    table = Table(title="Sync Results")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Updated", justify="right", style="yellow")
    table.add_column("Deleted", justify="right", style="red")
    table.add_column("Complete")
    table.add_row(
        str(result.events_created),
        str(result.events_updated),
        str(result.events_deleted),
        "✓" if result.complete else "[yellow]more pages pending[/yellow]",
    )
    console.print(table)


@cli.command()
@click.argument('calendar_link_id')
@click.option('--full', is_flag=True, help='Run a full windowed sync instead of an incremental one')
@click.option('--max-pages', type=int, default=None, help='Pages to process before pausing')
@async_command
async def sync(ctx, calendar_link_id, full, max_pages):
    """Sync one calendar link now."""
    settings: Settings = ctx.obj['settings']
    runtime = SyncRuntime.from_settings(settings)
    try:
        if full:
            result = await runtime.sync_engine.perform_initial_sync(calendar_link_id, max_pages)
        else:
            result = await runtime.sync_engine.perform_incremental_sync(calendar_link_id, max_pages)
    finally:
        await runtime.shutdown()

    _display_sync_result(result)
    if result.error:
        sys.exit(1)


@cli.command('reset-cursor')
@click.argument('calendar_link_id')
@click.confirmation_option(prompt='The next sync will re-download the whole window. Continue?')
@click.pass_context
def reset_cursor(ctx, calendar_link_id):
    """Forget the sync cursor of a calendar link."""
    settings: Settings = ctx.obj['settings']
    db = DatabaseManager(settings)

    with db.get_session() as session:
        if db.get_calendar_link(session, calendar_link_id) is None:
            console.print(f"[red]Calendar link {calendar_link_id} not found[/red]")
            sys.exit(1)
        db.clear_sync_state(session, calendar_link_id)

    console.print(f"[green]✓ Sync cursor cleared for {calendar_link_id}[/green]")


@cli.command()
@click.argument('calendar_link_id')
@click.confirmation_option(prompt='Stop push notifications and delete the link with its synced events?')
@async_command
async def unlink(ctx, calendar_link_id):
    """Remove a calendar link, stopping its watch channel first."""
    settings: Settings = ctx.obj['settings']
    runtime = SyncRuntime.from_settings(settings)
    try:
        deleted = await runtime.channel_manager.unlink_calendar(calendar_link_id)
    except OperationInProgressError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        await runtime.shutdown()

    if not deleted:
        console.print(f"[red]Calendar link {calendar_link_id} not found[/red]")
        sys.exit(1)
    logger.info("calendar_unlinked", calendar_link_id=calendar_link_id)
    console.print(f"[green]✓ Unlinked {calendar_link_id}[/green]")


@cli.command('set-sync')
@click.argument('calendar_link_id')
@click.option('--enable/--disable', default=True, help='Include or exclude the link from scheduled syncs')
@click.pass_context
def set_sync(ctx, calendar_link_id, enable):
    """Turn scheduled sync of a calendar link on or off."""
    settings: Settings = ctx.obj['settings']
    db = DatabaseManager(settings)

    with db.get_session() as session:
        updated = db.set_sync_enabled(session, calendar_link_id, enable)

    if not updated:
        console.print(f"[red]Calendar link {calendar_link_id} not found[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Sync {'enabled' if enable else 'disabled'} for {calendar_link_id}[/green]")


@cli.group()
def jobs():
    """Run scheduled jobs by hand."""
    pass


@jobs.command('run')
@click.argument('name', type=click.Choice(JOB_NAMES))
@async_command
async def run_job(ctx, name):
    """Run one scheduled job and print its summary."""
    settings: Settings = ctx.obj['settings']
    runtime = SyncRuntime.from_settings(settings)
    try:
        result = await runtime.jobs.run(name)
    except HearthsyncError as e:
        console.print(f"[red]Job {name} failed: {e}[/red]")
        sys.exit(1)
    finally:
        await runtime.shutdown()

    if isinstance(result, (BatchSummary, ExtensionResult)):
        data = result.model_dump()
    else:
        data = result
    console.print(Panel(json.dumps(data, indent=2, default=str), title=f"Job {name}", border_style="green"))


@cli.group()
def channels():
    """Push notification channel commands."""
    pass


@channels.command('list')
@click.pass_context
def list_channels(ctx):
    """List watch channels."""
    settings: Settings = ctx.obj['settings']
    db = DatabaseManager(settings)
    db.init_db()

    with db.get_session() as session:
        rows = [(c.id, c.calendar_link_id, c.expiration, c.last_message_number) for c in db.list_channels(session)]

    if not rows:
        console.print("[yellow]No watch channels[/yellow]")
        return

    table = Table(title="Watch Channels")
    table.add_column("Channel ID", style="cyan")
    table.add_column("Calendar Link")
    table.add_column("Expires")
    table.add_column("Last Message", justify="right")
    now = utcnow()
    for channel_id, link_id, expiration, last_message in rows:
        expires = _format_time(expiration)
        if ensure_utc(expiration) <= now:
            expires = f"[red]{expires} (expired)[/red]"
        table.add_row(channel_id, link_id, expires, str(last_message) if last_message is not None else "-")
    console.print(table)


@channels.command('create')
@click.argument('calendar_link_id')
@async_command
async def create_channel(ctx, calendar_link_id):
    """Create (or replace) the watch channel of a calendar link."""
    settings: Settings = ctx.obj['settings']
    runtime = SyncRuntime.from_settings(settings)
    try:
        result = await runtime.channel_manager.create_watch_channel(calendar_link_id)
    finally:
        await runtime.shutdown()

    if not result.success:
        console.print(f"[red]Failed to create channel: {result.error or 'operation already in progress'}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Channel {result.channel_id} expires {_format_time(result.expiration)}[/green]")


@channels.command('stop')
@click.argument('calendar_link_id')
@async_command
async def stop_channel(ctx, calendar_link_id):
    """Stop the watch channel of a calendar link."""
    settings: Settings = ctx.obj['settings']
    runtime = SyncRuntime.from_settings(settings)
    try:
        stopped = await runtime.channel_manager.stop_watch_channel(calendar_link_id)
    finally:
        await runtime.shutdown()

    if stopped:
        console.print(f"[green]✓ Channel stopped for {calendar_link_id}[/green]")
    else:
        console.print(f"[yellow]No channel for {calendar_link_id}[/yellow]")


@cli.group()
def patterns():
    """Recurring pattern commands."""
    pass


@patterns.command('add')
@click.option('--family', '-f', required=True, help='Local family ID')
@click.option('--title', '-t', required=True, help='Title copied onto every occurrence')
@click.option('--start', 'starts_at', required=True, type=click.DateTime(),
              help='First occurrence (UTC), e.g. 2024-01-01T16:00:00')
@click.option('--duration', 'duration_minutes', default=60, type=int, help='Occurrence length in minutes')
@click.option('--frequency', required=True, type=click.Choice([f.value for f in Frequency]))
@click.option('--interval', default=1, type=int, help='Repeat every N periods')
@click.option('--count', 'end_count', type=int, default=None, help='End after this many occurrences')
@click.option('--until', 'end_date', type=click.DateTime(), default=None, help='End on this date (inclusive)')
@click.option('--description', default=None)
@click.option('--location', default=None)
@click.option('--all-day', is_flag=True, help='Mark occurrences as all-day')
@click.pass_context
def add_pattern(ctx, family, title, starts_at, duration_minutes, frequency, interval, end_count, end_date,
                description, location, all_day):
    """Create a recurring pattern and materialize its upcoming occurrences."""
    settings: Settings = ctx.obj['settings']
    if end_count is not None and end_date is not None:
        console.print("[red]Use either --count or --until, not both[/red]")
        sys.exit(1)
    end_type = EndType.COUNT if end_count is not None else EndType.DATE if end_date is not None else EndType.NEVER

    try:
        definition = PatternDefinition(
            title=title,
            description=description,
            location=location,
            all_day=all_day,
            starts_at=starts_at,
            duration_minutes=duration_minutes,
            frequency=frequency,
            interval=interval,
            end_type=end_type,
            end_count=end_count,
            end_date=end_date,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid pattern:[/red]\n{escape(str(e))}")
        sys.exit(1)

    db = DatabaseManager(settings)
    db.init_db()
    result = RecurrenceHorizonExtender(settings, db).create_pattern(family, definition)

    logger.info("pattern_created", pattern_id=result.pattern_id, family_id=family)
    console.print(f"[green]✓ Created pattern {result.pattern_id}[/green]")
    console.print(f"  Occurrences: {result.events_created}")
    console.print(f"  Generated until: {_format_time(result.generated_until)}")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
