from __future__ import annotations

import json
from typing import Any, Iterable, Sequence

import typer

from models.records import ConnectionStatus, SensorReading
from models.schemas import ReadingView
from services.cache import CacheEntry

_STATUS_COLORS = {
    ConnectionStatus.open: typer.colors.GREEN,
    ConnectionStatus.connecting: typer.colors.YELLOW,
    ConnectionStatus.reconnecting: typer.colors.YELLOW,
    ConnectionStatus.closed: typer.colors.RED,
    ConnectionStatus.failed: typer.colors.RED,
}


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def format_reading(reading: SensorReading) -> str:
    status = reading.status.value if reading.status else "unknown"
    return (
        f"{reading.timestamp.isoformat()} {reading.machine_id} "
        f"T={reading.temperature_c:.1f}C H={reading.humidity_pct:.1f}% "
        f"CO2={reading.co2_ppm:.0f}ppm PM2.5={reading.pm25:g} PM10={reading.pm10:g} "
        f"TVOC={reading.tvoc:g} status={status}"
    )


def render_readings(readings: Sequence[SensorReading], as_json: bool = False) -> None:
    if as_json:
        payload = [ReadingView.from_reading(reading).model_dump(mode="json") for reading in readings]
        typer.echo(json.dumps(payload, indent=2))
        return

    echo_heading(f"Readings ({len(readings)})")
    if not readings:
        typer.echo("No readings returned.")
        return
    for reading in readings:
        typer.echo(f"  - {format_reading(reading)}")


def render_entry(entry: CacheEntry) -> None:
    color = _STATUS_COLORS.get(entry.connection_status)
    typer.secho(f"[{entry.connection_status.value}]", fg=color, nl=False)
    typer.echo(f" {format_reading(entry.reading)}")


def render_saved(path: str, size: int) -> None:
    echo_heading("Spreadsheet saved")
    echo_key_values([("path", path), ("bytes", size)])
