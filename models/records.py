"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ReadingStatus(str, Enum):
    """Classification attached to a reading by the source, when it sends one."""

    normal = "normal"
    warning = "warning"
    critical = "critical"


class ConnectionStatus(str, Enum):
    """Lifecycle states of a live telemetry stream."""

    idle = "idle"
    connecting = "connecting"
    open = "open"
    closed = "closed"
    reconnecting = "reconnecting"
    failed = "failed"


@dataclass(frozen=True, slots=True)
class SensorReading:
    """A canonical, fully populated sensor reading.

    ``status`` is ``None`` when the source did not classify the reading;
    consumers must treat that as unknown rather than normal.
    ``timestamp_valid`` is ``False`` when the source timestamp could not be
    parsed and ``timestamp`` was set to the epoch.
    """

    timestamp: datetime
    machine_id: str
    temperature_c: float = 0.0
    humidity_pct: float = 0.0
    pm25: float = 0.0
    pm10: float = 0.0
    pm25_average: float = 0.0
    pm10_average: float = 0.0
    co2_ppm: float = 0.0
    tvoc: float = 0.0
    status: Optional[ReadingStatus] = None
    timestamp_valid: bool = True


@dataclass(frozen=True, slots=True)
class ConnectionState:
    """Snapshot of a stream's connection lifecycle."""

    status: ConnectionStatus = ConnectionStatus.idle
    attempt: int = 0
    last_error: Optional[BaseException] = None
