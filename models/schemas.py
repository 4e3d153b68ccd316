"""Pydantic schemas for the REST telemetry API and serialized readings."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator

from models.records import ReadingStatus, SensorReading

QUERY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_query_time(value: datetime) -> str:
    """Render a datetime the way the telemetry API expects it (no zone suffix)."""
    return value.strftime(QUERY_TIME_FORMAT)


class ExportFormat(str, Enum):
    """Body formats the search endpoint can be asked for."""

    json = "json"
    excel = "excel"


class RecentQuery(BaseModel):
    """Parameters of ``GET /getRecentData``."""

    company_lab: str = Field(..., min_length=1)
    machine: str = Field(..., min_length=1)
    number: int = Field(..., ge=1)

    def to_params(self) -> Dict[str, str]:
        return {
            "company_lab": self.company_lab,
            "machine": self.machine,
            "number": str(self.number),
        }


class RangeQuery(BaseModel):
    """Parameters of ``GET /searchData``."""

    company_lab: str = Field(..., min_length=1)
    machine: str = Field(..., min_length=1)
    start: datetime
    end: datetime
    format: ExportFormat = ExportFormat.json

    @model_validator(mode="after")
    def _check_window(self) -> "RangeQuery":
        if self.end < self.start:
            raise ValueError("end must not be earlier than start")
        return self

    def to_params(self) -> Dict[str, str]:
        return {
            "company_lab": self.company_lab,
            "machine": self.machine,
            "start": format_query_time(self.start),
            "end": format_query_time(self.end),
            "format": self.format.value,
        }


class ReadingView(BaseModel):
    """JSON-friendly view of a :class:`SensorReading`."""

    timestamp: datetime
    machine_id: str
    temperature_c: float
    humidity_pct: float
    pm25: float
    pm10: float
    pm25_average: float
    pm10_average: float
    co2_ppm: float
    tvoc: float
    status: Optional[ReadingStatus] = None
    timestamp_valid: bool = True

    @classmethod
    def from_reading(cls, reading: SensorReading) -> "ReadingView":
        return cls(
            timestamp=reading.timestamp,
            machine_id=reading.machine_id,
            temperature_c=reading.temperature_c,
            humidity_pct=reading.humidity_pct,
            pm25=reading.pm25,
            pm10=reading.pm10,
            pm25_average=reading.pm25_average,
            pm10_average=reading.pm10_average,
            co2_ppm=reading.co2_ppm,
            tvoc=reading.tvoc,
            status=reading.status,
            timestamp_valid=reading.timestamp_valid,
        )
