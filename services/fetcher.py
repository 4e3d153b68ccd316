"""Point-in-time reads from the REST telemetry API."""

from __future__ import annotations

import io
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
import pandas as pd

from logging_config import stream_context
from models.records import SensorReading
from models.schemas import ExportFormat, RangeQuery, RecentQuery
from services.normalizer import normalize
from settings import get_settings

logger = logging.getLogger(__name__)

SPREADSHEET_CONTENT_TYPES = (
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
    "application/octet-stream",
    "application/zip",
)
DEFAULT_SPREADSHEET_NAME = "data.xlsx"

_FILENAME_PATTERN = re.compile(r"filename[^;=\n]*=((['\"]).*?\2|[^;\n]*)")


class FetchErrorKind(str, Enum):
    unauthorized = "unauthorized"
    not_found = "not_found"
    bad_request = "bad_request"
    server_error = "server_error"
    unreachable = "unreachable"
    format_error = "format_error"


class FetchError(Exception):
    """A REST read failed; ``kind`` tells callers how to react."""

    def __init__(self, kind: FetchErrorKind, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


@dataclass(frozen=True)
class SpreadsheetArtifact:
    """An opaque spreadsheet body returned by the search endpoint."""

    content: bytes
    filename: str
    content_type: str


def classify_status(status_code: int) -> FetchErrorKind:
    if status_code in (401, 403):
        return FetchErrorKind.unauthorized
    if status_code == 404:
        return FetchErrorKind.not_found
    if status_code >= 500:
        return FetchErrorKind.server_error
    return FetchErrorKind.bad_request


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        text = response.text.strip()
        if text and len(text) < 200 and not text.lower().startswith("<!doctype"):
            return text
        return None
    if not isinstance(data, Mapping):
        return None
    detail = data.get("detail")
    if isinstance(detail, str):
        return detail
    if isinstance(detail, list):
        parts = []
        for item in detail:
            if isinstance(item, Mapping):
                location = ".".join(str(part) for part in item.get("loc") or ())
                parts.append(f"{location}: {item.get('msg')}")
        return ", ".join(parts) or None
    if detail is not None:
        return json.dumps(detail)
    message = data.get("message")
    return message if isinstance(message, str) else None


def _filename(response: httpx.Response) -> str:
    disposition = response.headers.get("content-disposition")
    if disposition:
        match = _FILENAME_PATTERN.search(disposition)
        if match and match.group(1):
            name = match.group(1).replace('"', "").replace("'", "").strip()
            if name:
                return name
    return DEFAULT_SPREADSHEET_NAME


def read_spreadsheet_rows(artifact: SpreadsheetArtifact) -> List[Dict[str, Any]]:
    """Read the first sheet of a spreadsheet artifact into row dictionaries."""
    try:
        frame = pd.read_excel(io.BytesIO(artifact.content), sheet_name=0)
    except Exception as exc:  # noqa: BLE001 - pandas raises many reader-specific errors
        raise FetchError(
            FetchErrorKind.format_error,
            f"Spreadsheet {artifact.filename!r} could not be parsed: {exc}",
        ) from exc
    frame = frame.astype(object).where(pd.notna(frame), None)
    return frame.to_dict(orient="records")


class SnapshotFetcher:
    """Fetches recent and ranged readings and normalizes them.

    Results keep the order the API returned them in. Calls are not retried.
    """

    def __init__(
        self,
        base_url: str,
        credential: Optional[str] = None,
        *,
        timeout: float = 30.0,
        assume_tz: tzinfo = timezone.utc,
        credential_provider: Optional[Callable[[], Optional[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._credential = credential
        self._credential_provider = credential_provider
        self._assume_tz = assume_tz
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "SnapshotFetcher":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_recent(self, company_lab: str, machine: str, count: int) -> List[SensorReading]:
        query = RecentQuery(company_lab=company_lab, machine=machine, number=count)
        response = await self._get("/getRecentData", query.to_params())
        body = self._read_body(response)
        if isinstance(body, SpreadsheetArtifact):
            body = read_spreadsheet_rows(body)
        return self._normalize_rows(body, machine)

    async def fetch_range(
        self,
        company_lab: str,
        machine: str,
        start: datetime,
        end: datetime,
        format: Union[ExportFormat, str] = ExportFormat.json,
    ) -> Union[List[SensorReading], SpreadsheetArtifact]:
        query = RangeQuery(
            company_lab=company_lab,
            machine=machine,
            start=start,
            end=end,
            format=format,
        )
        response = await self._get("/searchData", query.to_params())
        body = self._read_body(response)
        if isinstance(body, SpreadsheetArtifact):
            if query.format is ExportFormat.excel:
                return body
            logger.info(
                "Spreadsheet returned for a JSON request; parsing it locally",
                extra=stream_context(company_lab, machine),
            )
            body = read_spreadsheet_rows(body)
        return self._normalize_rows(body, machine)

    def _headers(self) -> Dict[str, str]:
        credential = self._credential
        if self._credential_provider is not None:
            credential = self._credential_provider() or credential
        if not credential:
            return {}
        return {"Authorization": f"Bearer {credential}"}

    async def _get(self, path: str, params: Dict[str, str]) -> httpx.Response:
        try:
            response = await self._client.get(path, params=params, headers=self._headers())
        except httpx.TransportError as exc:
            logger.error("Telemetry API unreachable: %s", exc, extra={"kind": FetchErrorKind.unreachable})
            raise FetchError(FetchErrorKind.unreachable, f"Telemetry API unreachable: {exc}") from exc

        if response.is_error:
            kind = classify_status(response.status_code)
            detail = _error_detail(response)
            message = f"Request failed with status {response.status_code}: {detail or 'no detail provided.'}"
            logger.error(message, extra={"kind": kind})
            raise FetchError(kind, message, status_code=response.status_code)
        return response

    @staticmethod
    def _read_body(response: httpx.Response) -> Union[List[Any], SpreadsheetArtifact]:
        content_type = response.headers.get("content-type", "").lower()
        if any(candidate in content_type for candidate in SPREADSHEET_CONTENT_TYPES):
            return SpreadsheetArtifact(
                content=response.content,
                filename=_filename(response),
                content_type=content_type.split(";")[0].strip(),
            )

        text = response.text
        if text.lstrip()[:9].lower() == "<!doctype" or text.lstrip()[:5].lower() == "<html":
            raise FetchError(
                FetchErrorKind.format_error,
                "Telemetry API returned an HTML page instead of data.",
                status_code=response.status_code,
            )
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise FetchError(
                FetchErrorKind.format_error,
                f"Response is not valid JSON: {text[:50]!r}",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, list):
            raise FetchError(
                FetchErrorKind.format_error,
                f"Expected a JSON array of readings, got {type(payload).__name__}.",
                status_code=response.status_code,
            )
        return payload

    def _normalize_rows(self, rows: List[Any], machine: str) -> List[SensorReading]:
        received_at = datetime.now(timezone.utc)
        readings: List[SensorReading] = []
        for index, row in enumerate(rows):
            if not isinstance(row, Mapping):
                raise FetchError(
                    FetchErrorKind.format_error,
                    f"Row {index} is not an object: {type(row).__name__}.",
                )
            readings.append(
                normalize(row, machine, received_at=received_at, assume_tz=self._assume_tz)
            )
        return readings


def resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Invalid timezone '%s', falling back to UTC", name)
        return timezone.utc


def build_default_fetcher(credential: Optional[str] = None) -> SnapshotFetcher:
    """Factory that wires a fetcher with the configured API endpoint."""
    settings = get_settings()
    return SnapshotFetcher(
        settings.api_base_url,
        credential if credential is not None else settings.api_token,
        timeout=settings.request_timeout,
        assume_tz=resolve_timezone(settings.source_timezone),
    )
