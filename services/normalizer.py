"""Conversion of raw telemetry payloads into canonical sensor readings.

The backend sends readings in two shapes:

* nested, as returned by the REST snapshot endpoints::

    {"timestamp": "...", "machine": "aq", "values": {"temperature": 21.3, ...}}

* flat, as pushed over the live channel or read from a spreadsheet row::

    {"timestamp": "...", "machine": "aq", "temperatu": 21.3, "pm25_ave": 9, ...}

Each canonical field is resolved through an ordered list of accessors; the
first accessor producing a finite number wins and a field nothing resolves
becomes ``0``.  Normalization never raises on malformed input.
"""

from __future__ import annotations

import math
import numbers
import re
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from models.records import ReadingStatus, SensorReading

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Accessor = Callable[[Mapping[str, Any]], Any]


class RawShape(str, Enum):
    nested = "nested"
    flat = "flat"


def classify(raw: Mapping[str, Any]) -> RawShape:
    """Tell the nested snapshot shape from the flat push shape."""
    if isinstance(raw.get("values"), Mapping):
        return RawShape.nested
    return RawShape.flat


def nested(name: str) -> Accessor:
    def _get(raw: Mapping[str, Any]) -> Any:
        values = raw.get("values")
        if isinstance(values, Mapping):
            return values.get(name)
        return None

    _get.__name__ = f"values.{name}"
    return _get


def flat(name: str) -> Accessor:
    def _get(raw: Mapping[str, Any]) -> Any:
        return raw.get(name)

    _get.__name__ = name
    return _get


FIELD_ACCESSORS: Dict[str, Tuple[Accessor, ...]] = {
    "temperature_c": (nested("temperature"), flat("temperatu"), flat("temperature"), flat("temp")),
    "humidity_pct": (nested("humidity"), flat("humidity")),
    "pm25": (nested("pm25"), flat("pm25")),
    "pm10": (nested("pm10"), flat("pm10")),
    "pm25_average": (nested("pm25_average"), flat("pm25_ave"), flat("pm25_average"), flat("pm25Avg")),
    "pm10_average": (nested("pm10_average"), flat("pm10_ave"), flat("pm10_average"), flat("pm10Avg")),
    "co2_ppm": (nested("co2"), flat("co2")),
    "tvoc": (nested("tvoc"), flat("tvoc")),
}

MACHINE_ACCESSORS: Tuple[Accessor, ...] = (flat("machine"), flat("machine_id"), flat("sensor"))
TIMESTAMP_ACCESSORS: Tuple[Accessor, ...] = (flat("timestamp"), flat("time"))

_SLASH_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S.%f",
    "%Y/%m/%dT%H:%M:%S",
    "%Y/%m/%dT%H:%M:%S.%f",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
)

_DATE_PATTERN = re.compile(
    r"(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})"
    r"(?:[ T]+(\d{1,2}):(\d{1,2})(?::(\d{1,2}))?)?"
)

# Numeric timestamps above this are taken as milliseconds.
_MILLIS_THRESHOLD = 1e11


def to_number(value: Any) -> Optional[float]:
    """Coerce a raw field to a finite float, or ``None`` when it is not one."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, numbers.Real):
        number = float(value)
    elif isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            number = float(candidate)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def resolve_number(raw: Mapping[str, Any], accessors: Sequence[Accessor]) -> float:
    for accessor in accessors:
        number = to_number(accessor(raw))
        if number is not None:
            return number
    return 0.0


def _first_present(raw: Mapping[str, Any], accessors: Sequence[Accessor]) -> Any:
    for accessor in accessors:
        value = accessor(raw)
        if value is not None and value != "":
            return value
    return None


def _as_utc(parsed: datetime, assume_tz: tzinfo) -> datetime:
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=assume_tz)
    return parsed.astimezone(timezone.utc)


def _parse_strict(text: str) -> Optional[datetime]:
    candidate = text
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def _parse_slashed(text: str) -> Optional[datetime]:
    candidate = text.replace("-", "/")
    for fmt in _SLASH_FORMATS:
        try:
            return datetime.strptime(candidate, fmt)
        except ValueError:
            continue
    return None


def _parse_extracted(text: str) -> Optional[datetime]:
    match = _DATE_PATTERN.search(text)
    if match is None:
        return None
    parts = [int(group) if group else 0 for group in match.groups()]
    try:
        return datetime(*parts)
    except ValueError:
        return None


_STRATEGIES = (_parse_strict, _parse_slashed, _parse_extracted)


def parse_timestamp(value: Any, assume_tz: tzinfo = timezone.utc) -> Optional[datetime]:
    """Parse a source timestamp into an aware UTC datetime.

    Strings go through the strict ISO parser, then a slash-separated retry,
    then a regex extraction of the date and time groups. Numbers are epoch
    seconds, or milliseconds when large enough. Returns ``None`` when nothing
    yields a valid instant.
    """
    if isinstance(value, datetime):
        return _as_utc(value, assume_tz)
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        value = float(value)
        if not math.isfinite(value):
            return None
        seconds = value / 1000.0 if abs(value) > _MILLIS_THRESHOLD else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    for strategy in _STRATEGIES:
        parsed = strategy(text)
        if parsed is not None:
            return _as_utc(parsed, assume_tz)
    return None


def _resolve_status(raw: Mapping[str, Any]) -> Optional[ReadingStatus]:
    value = raw.get("status")
    if isinstance(value, str):
        try:
            return ReadingStatus(value.strip().lower())
        except ValueError:
            return None
    return None


def normalize(
    raw: Any,
    fallback_machine: str,
    *,
    received_at: Optional[datetime] = None,
    assume_tz: tzinfo = timezone.utc,
) -> SensorReading:
    """Convert any known raw payload shape into a :class:`SensorReading`.

    A payload without a timestamp is stamped with ``received_at`` (or the
    current time); an unparseable timestamp becomes the epoch with
    ``timestamp_valid=False`` so callers can filter it out.
    """
    if not isinstance(raw, Mapping):
        raw = {}

    machine = _first_present(raw, MACHINE_ACCESSORS)
    machine_id = str(machine) if machine is not None else fallback_machine

    raw_timestamp = _first_present(raw, TIMESTAMP_ACCESSORS)
    timestamp_valid = True
    if raw_timestamp is None:
        timestamp = _as_utc(received_at or datetime.now(timezone.utc), assume_tz)
    else:
        parsed = parse_timestamp(raw_timestamp, assume_tz)
        if parsed is None:
            timestamp = EPOCH
            timestamp_valid = False
        else:
            timestamp = parsed

    fields = {name: resolve_number(raw, accessors) for name, accessors in FIELD_ACCESSORS.items()}
    return SensorReading(
        timestamp=timestamp,
        machine_id=machine_id,
        status=_resolve_status(raw),
        timestamp_valid=timestamp_valid,
        **fields,
    )
