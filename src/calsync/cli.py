"""CLI for calsync: run the backend and drive the Google Calendar sync engine."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime, tzinfo
from pathlib import Path

import click
import uvicorn

from calsync.api.app import create_app
from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.core.state import JsonFileStateStore
from calsync.engine.collaborators import BackendClient, WebBrowserOpener
from calsync.engine.models import CalendarEvent, EngineStatus, SyncOutcome
from calsync.engine.poller import SyncPoller
from calsync.engine.sync import CalendarSyncEngine

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to calsync.toml (default: ./calsync.toml when present)",
)
@click.option("--log-level", default=None, help="Override [logging].level")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """Keep a local projection of a Google calendar in sync."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)

    configure_logging(
        level=(log_level or config.logging.level).upper(),
        fmt=config.logging.format,
        log_file=Path(config.logging.log_file).expanduser() if config.logging.log_file else None,
        calendar_id=config.sync.calendar_id,
    )
    ctx.obj = config


_backend_option = click.option(
    "--embedded-backend/--external-backend",
    default=True,
    help="Run the loopback backend in-process (default) or use one already running",
)


@cli.command()
@click.pass_obj
def serve(config: CalsyncConfig) -> None:
    """Run the loopback backend (OAuth redirect + Google proxies)."""
    click.echo(f"calsync backend listening on http://{config.backend.host}:{config.backend.port}")
    uvicorn.run(
        create_app(config),
        host=config.backend.host,
        port=config.backend.port,
        log_config=None,
    )


@cli.command()
@_backend_option
@click.pass_obj
def connect(config: CalsyncConfig, embedded_backend: bool) -> None:
    """Authorize with Google in the browser, then run a first full sync."""
    if not config.oauth.client_id:
        click.echo("No OAuth client id configured ([oauth].client_id or GOOGLE_CLIENT_ID)")
        sys.exit(1)
    click.echo("Opening the browser for Google authorization...")
    ok = asyncio.run(_connect(config, embedded_backend))
    sys.exit(0 if ok else 1)


@cli.command()
@_backend_option
@click.pass_obj
def sync(config: CalsyncConfig, embedded_backend: bool) -> None:
    """Run one sync round (full or delta)."""
    ok = asyncio.run(_sync(config, embedded_backend))
    sys.exit(0 if ok else 1)


@cli.command()
@click.argument("day", required=False, default="today")
@_backend_option
@click.pass_obj
def day(config: CalsyncConfig, day: str, embedded_backend: bool) -> None:
    """Show (and refresh) the events of DAY (YYYY-MM-DD, default: today)."""
    try:
        selected = None if day == "today" else date.fromisoformat(day)
    except ValueError:
        click.echo(f"Invalid date: {day!r} (expected YYYY-MM-DD)")
        sys.exit(2)
    ok = asyncio.run(_day(config, selected, embedded_backend))
    sys.exit(0 if ok else 1)


@cli.command()
@click.pass_obj
def status(config: CalsyncConfig) -> None:
    """Show connection status, cursor and cache size."""
    asyncio.run(_status(config))


@cli.command()
@click.pass_obj
def disconnect(config: CalsyncConfig) -> None:
    """Forget tokens, cursor and cached events."""
    asyncio.run(_disconnect(config))
    click.echo("Disconnected.")


@cli.command()
@click.option("--interval", type=float, default=None, help="Override [sync].poll_interval (s)")
@_backend_option
@click.pass_obj
def watch(config: CalsyncConfig, interval: float | None, embedded_backend: bool) -> None:
    """Poll for changes until interrupted."""
    asyncio.run(_watch(config, interval or config.sync.poll_interval, embedded_backend))


# ---------------------------------------------------------------------------
# Async helpers
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _backend(config: CalsyncConfig, embedded: bool) -> AsyncIterator[None]:
    """Run the backend on the configured host/port for the duration of the block."""
    if not embedded:
        yield
        return

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(config),
            host=config.backend.host,
            port=config.backend.port,
            log_config=None,
            log_level="warning",
        )
    )
    # The CLI installs its own signal handlers.
    server.install_signal_handlers = lambda: None  # type: ignore[method-assign]
    task = asyncio.create_task(server.serve(), name="calsync-backend")
    while not server.started:
        if task.done():
            task.result()
            raise click.ClickException(
                f"Backend failed to start on {config.backend.host}:{config.backend.port}"
            )
        await asyncio.sleep(0.05)
    try:
        yield
    finally:
        server.should_exit = True
        await task


@asynccontextmanager
async def _open_engine(
    config: CalsyncConfig, *, embedded_backend: bool = False
) -> AsyncIterator[CalendarSyncEngine]:
    async with _backend(config, embedded_backend):
        async with BackendClient(
            config.backend.base_url, timeout=config.backend.request_timeout
        ) as client:
            engine = CalendarSyncEngine(
                config,
                store=JsonFileStateStore(config.storage.path),
                exchanger=client,
                lister=client,
                channel=client,
                opener=WebBrowserOpener(),
            )
            await engine.load()
            try:
                yield engine
            finally:
                await engine.dispose()


def _format_event(event: CalendarEvent, tz: tzinfo) -> str:
    if event.start.is_all_day:
        when = "all-day"
    else:
        when = event.start_instant(tz).astimezone(tz).strftime("%H:%M")
    title = event.summary or "(no title)"
    line = f"  {when:<8} {title}"
    if event.location:
        line += f"  @ {event.location}"
    return line


def _format_timestamp(value: datetime | None, tz: tzinfo) -> str:
    return value.astimezone(tz).isoformat(timespec="seconds") if value else "never"


async def _connect(config: CalsyncConfig, embedded_backend: bool) -> bool:
    async with _open_engine(config, embedded_backend=embedded_backend) as engine:
        result = await engine.connect()
        if result.status != EngineStatus.connected:
            click.echo(f"Connection failed: {result.error}")
            return False
        click.echo(f"Connected. {len(engine.events)} event(s) cached.")
        return True


async def _sync(config: CalsyncConfig, embedded_backend: bool) -> bool:
    async with _open_engine(config, embedded_backend=embedded_backend) as engine:
        if not engine.is_connected:
            click.echo("Not connected. Run `calsync connect` first.")
            return False
        result = await engine.sync_now()
        if result.outcome != SyncOutcome.ok:
            click.echo(f"Sync {result.outcome}: {result.error or 'no changes applied'}")
            return False
        click.echo(
            f"Sync ok ({result.mode}{', full re-sync' if result.full_resync else ''}): "
            f"{result.upserted} upserted, {result.removed} removed, {result.pages} page(s)"
        )
        return True


async def _day(config: CalsyncConfig, selected: date | None, embedded_backend: bool) -> bool:
    tz = config.sync.tzinfo
    async with _open_engine(config, embedded_backend=embedded_backend) as engine:
        view = await engine.select_date(selected or engine.today())
        click.echo(f"{view.date.isoformat()} ({len(view.events)} event(s))")
        for event in view.events:
            click.echo(_format_event(event, tz))
        if view.error:
            click.echo(f"Refresh failed, showing cached events: {view.error}")
            return False
        return True


async def _status(config: CalsyncConfig) -> None:
    tz = config.sync.tzinfo
    async with _open_engine(config) as engine:
        tokens = engine.tokens
        click.echo(f"Status:      {engine.status}")
        click.echo(f"Calendar:    {engine.calendar_id}")
        click.echo(f"Last sync:   {_format_timestamp(engine.last_sync_at, tz)}")
        click.echo(f"Sync cursor: {'present' if engine.cursor.sync_token else 'absent'}")
        click.echo(f"Events:      {len(engine.events)}")
        if tokens is not None:
            click.echo(f"Token until: {_format_timestamp(tokens.expires_at, tz)}")


async def _disconnect(config: CalsyncConfig) -> None:
    async with _open_engine(config) as engine:
        await engine.disconnect()


async def _watch(config: CalsyncConfig, interval: float, embedded_backend: bool) -> None:
    async with _open_engine(config, embedded_backend=embedded_backend) as engine:
        if not engine.is_connected:
            click.echo("Not connected. Run `calsync connect` first.")
            return

        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()

        def _signal_handler() -> None:
            click.echo("\nShutting down...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        poller = SyncPoller(engine, interval)
        poller.start()
        click.echo(f"Watching calendar {engine.calendar_id} every {interval:g}s (Ctrl+C to stop)")
        await shutdown_event.wait()
        await poller.stop()
