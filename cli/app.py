from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, List, NoReturn, Optional, Union

import typer
from pydantic import ValidationError

from cli.render import render_entry, render_readings, render_saved
from logging_config import configure_logging
from models.records import SensorReading
from models.schemas import ExportFormat
from services.cache import CacheEntry, LatestReadingCache
from services.connection import ConnectionEvent, ConnectionManager, ReconnectExhausted, connect_websocket
from services.feed import ReadingFeed
from services.fetcher import FetchError, SnapshotFetcher, SpreadsheetArtifact, resolve_timezone
from settings import Settings, get_settings

_TIME_FORMATS = ["%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d"]


@dataclass
class CLIState:
    settings: Settings
    api_url: str
    ws_url: str
    token: Optional[str]


app = typer.Typer(
    help="Inspect and follow lab sensor telemetry.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


def _build_fetcher(state: CLIState) -> SnapshotFetcher:
    return SnapshotFetcher(
        state.api_url,
        state.token,
        timeout=state.settings.request_timeout,
        assume_tz=resolve_timezone(state.settings.source_timezone),
    )


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    api_url: Optional[str] = typer.Option(
        None,
        "--api-url",
        "-a",
        help="Telemetry REST base URL (defaults to LAB_API_BASE_URL env or http://localhost:8000/api).",
    ),
    ws_url: Optional[str] = typer.Option(
        None,
        "--ws-url",
        "-w",
        help="Push channel base URL (defaults to LAB_WS_BASE_URL env or ws://localhost:8000/ws).",
    ),
    token: Optional[str] = typer.Option(
        None,
        "--token",
        "-t",
        help="Bearer credential (defaults to LAB_API_TOKEN env).",
    ),
) -> None:
    """Entry point for the CLI."""
    configure_logging()
    settings = get_settings()
    ctx.obj = CLIState(
        settings=settings,
        api_url=(api_url or settings.api_base_url).rstrip("/"),
        ws_url=(ws_url or settings.ws_base_url).rstrip("/"),
        token=token or settings.api_token,
    )


@app.command("recent")
def recent_command(
    ctx: typer.Context,
    company_lab: str = typer.Argument(..., help="Company/lab scope, e.g. nccu_lab."),
    machine: str = typer.Argument(..., help="Machine identifier, e.g. aq."),
    count: int = typer.Option(10, "--count", "-n", min=1, help="Number of readings to fetch."),
    as_json: bool = typer.Option(False, "--json", help="Print readings as JSON."),
) -> None:
    """Show the most recent readings of a machine."""
    state = _get_state(ctx)

    async def _run() -> List[SensorReading]:
        fetcher = _build_fetcher(state)
        try:
            return await fetcher.fetch_recent(company_lab, machine, count)
        finally:
            await fetcher.aclose()

    try:
        readings = asyncio.run(_run())
    except FetchError as exc:
        _fail(str(exc))
    render_readings(readings, as_json=as_json)


@app.command("range")
def range_command(
    ctx: typer.Context,
    company_lab: str = typer.Argument(..., help="Company/lab scope."),
    machine: str = typer.Argument(..., help="Machine identifier."),
    start: datetime = typer.Argument(..., formats=_TIME_FORMATS, help="Window start (local time)."),
    end: datetime = typer.Argument(..., formats=_TIME_FORMATS, help="Window end (local time)."),
    export_format: ExportFormat = typer.Option(
        ExportFormat.json,
        "--format",
        "-f",
        help="Ask the API for JSON or a spreadsheet.",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        dir_okay=False,
        help="Where to save a spreadsheet response (defaults to the server-provided name).",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print readings as JSON."),
) -> None:
    """Query readings between two instants."""
    state = _get_state(ctx)

    async def _run() -> Union[List[SensorReading], SpreadsheetArtifact]:
        fetcher = _build_fetcher(state)
        try:
            return await fetcher.fetch_range(company_lab, machine, start, end, export_format)
        finally:
            await fetcher.aclose()

    try:
        result = asyncio.run(_run())
    except ValidationError as exc:
        raise typer.BadParameter(exc.errors()[0].get("msg", str(exc))) from exc
    except FetchError as exc:
        _fail(str(exc))

    if isinstance(result, SpreadsheetArtifact):
        target = output or Path(result.filename)
        target.write_bytes(result.content)
        render_saved(str(target), len(result.content))
        return
    render_readings(result, as_json=as_json)


@app.command("watch")
def watch_command(
    ctx: typer.Context,
    company_lab: str = typer.Argument(..., help="Company/lab scope."),
    machine: str = typer.Argument(..., help="Machine identifier."),
    limit: int = typer.Option(0, "--limit", "-l", min=0, help="Stop after this many updates (0 = run until Ctrl+C)."),
) -> None:
    """Hydrate from REST, then follow the live stream."""
    state = _get_state(ctx)
    if not state.token:
        raise typer.BadParameter("A credential is required: pass --token or set LAB_API_TOKEN.")

    try:
        exhausted = asyncio.run(_watch(state, company_lab, machine, limit))
    except KeyboardInterrupt:
        typer.echo("Stopped.")
        return
    if exhausted:
        _fail("Live stream gave up after exhausting its reconnect attempts; run watch again to retry.")


async def _watch(state: CLIState, company_lab: str, machine: str, limit: int) -> bool:
    settings = state.settings
    assume_tz = resolve_timezone(settings.source_timezone)
    cache = LatestReadingCache()
    fetcher = _build_fetcher(state)
    manager = ConnectionManager(
        state.ws_url,
        reconnect_delay=settings.reconnect_delay,
        max_attempts=settings.max_reconnect_attempts,
        connector=connect_websocket,
    )
    feed = ReadingFeed(manager, fetcher, cache, company_lab, machine, assume_tz=assume_tz)

    done = asyncio.Event()
    updates = 0
    exhausted = False

    def on_update(entry: CacheEntry) -> None:
        nonlocal updates
        render_entry(entry)
        updates += 1
        if limit and updates >= limit:
            done.set()

    def on_error(error: Any) -> None:
        nonlocal exhausted
        if isinstance(error, ReconnectExhausted):
            exhausted = True
            done.set()

    cache.subscribe(company_lab, machine, on_update)
    manager.on(ConnectionEvent.error, on_error)
    try:
        await feed.start(state.token or "", hydrate_count=settings.hydrate_count)
        await done.wait()
    finally:
        feed.stop()
        await fetcher.aclose()
    return exhausted
