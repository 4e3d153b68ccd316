from __future__ import annotations

import asyncio
import io
from datetime import datetime, timezone
from typing import Any, Callable, List

import httpx
import pandas as pd
import pytest
from pydantic import ValidationError

from models.schemas import ExportFormat
from services.fetcher import (
    FetchError,
    FetchErrorKind,
    SnapshotFetcher,
    SpreadsheetArtifact,
    classify_status,
)

BASE_URL = "http://api.test/api"
XLSX_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

SNAPSHOT_ROWS = [
    {
        "_id": "a",
        "timestamp": "2024-03-01 08:00:00",
        "machine": "aq",
        "values": {"temperature": 21.3, "humidity": 55, "co2": 410},
    },
    {
        "_id": "b",
        "timestamp": "2024-03-01 07:59:00",
        "machine": "aq",
        "values": {"temperature": 21.1, "humidity": 54, "co2": 405},
    },
]


def _run(handler: Callable[[httpx.Request], httpx.Response], call, credential: Any = "tok"):
    async def scenario():
        async with SnapshotFetcher(
            BASE_URL,
            credential,
            transport=httpx.MockTransport(handler),
        ) as fetcher:
            return await call(fetcher)

    return asyncio.run(scenario())


def _xlsx_bytes(rows: List[dict]) -> bytes:
    buffer = io.BytesIO()
    pd.DataFrame(rows).to_excel(buffer, index=False)
    return buffer.getvalue()


def test_fetch_recent_sends_query_and_credential() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=SNAPSHOT_ROWS)

    readings = _run(handler, lambda fetcher: fetcher.fetch_recent("nccu_lab", "aq", 20))

    [request] = requests
    assert request.url.path == "/api/getRecentData"
    assert dict(request.url.params) == {"company_lab": "nccu_lab", "machine": "aq", "number": "20"}
    assert request.headers["Authorization"] == "Bearer tok"
    assert [reading.co2_ppm for reading in readings] == [410, 405]
    assert readings[0].timestamp == datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
    assert readings[0].temperature_c == 21.3


def test_fetch_without_credential_omits_authorization() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=[])

    readings = _run(handler, lambda fetcher: fetcher.fetch_recent("lab", "aq", 1), credential=None)

    assert readings == []
    assert "Authorization" not in requests[0].headers


def test_fetch_range_formats_window_parameters() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=SNAPSHOT_ROWS[:1])

    readings = _run(
        handler,
        lambda fetcher: fetcher.fetch_range(
            "lab", "aq", datetime(2024, 3, 1, 0, 0), datetime(2024, 3, 1, 12, 30)
        ),
    )

    params = requests[0].url.params
    assert requests[0].url.path == "/api/searchData"
    assert params["start"] == "2024-03-01 00:00:00"
    assert params["end"] == "2024-03-01 12:30:00"
    assert params["format"] == "json"
    assert len(readings) == 1


def test_fetch_range_returns_spreadsheet_artifact_when_requested() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=b"PK\x03\x04binary",
            headers={
                "content-type": XLSX_TYPE,
                "content-disposition": 'attachment; filename="nccu_aq.xlsx"',
            },
        )

    result = _run(
        handler,
        lambda fetcher: fetcher.fetch_range(
            "lab", "aq", datetime(2024, 3, 1), datetime(2024, 3, 2), ExportFormat.excel
        ),
    )

    assert isinstance(result, SpreadsheetArtifact)
    assert result.filename == "nccu_aq.xlsx"
    assert result.content_type == XLSX_TYPE
    assert result.content.startswith(b"PK")


def test_unexpected_spreadsheet_is_parsed_into_readings() -> None:
    content = _xlsx_bytes(
        [
            {"timestamp": "2024-03-01 08:00:00", "machine": "aq", "temperatu": 21.5, "co2": 420},
            {"timestamp": "2024-03-01 08:01:00", "machine": "aq", "temperatu": 21.6, "co2": None},
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=content, headers={"content-type": XLSX_TYPE})

    readings = _run(
        handler,
        lambda fetcher: fetcher.fetch_range("lab", "aq", datetime(2024, 3, 1), datetime(2024, 3, 2)),
    )

    assert [reading.temperature_c for reading in readings] == [21.5, 21.6]
    assert [reading.co2_ppm for reading in readings] == [420, 0]
    assert readings[1].timestamp == datetime(2024, 3, 1, 8, 1, tzinfo=timezone.utc)


def test_corrupt_spreadsheet_is_a_format_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"not a workbook", headers={"content-type": XLSX_TYPE})

    with pytest.raises(FetchError) as excinfo:
        _run(handler, lambda fetcher: fetcher.fetch_recent("lab", "aq", 5))

    assert excinfo.value.kind is FetchErrorKind.format_error


@pytest.mark.parametrize(
    "status_code, kind",
    [
        (401, FetchErrorKind.unauthorized),
        (403, FetchErrorKind.unauthorized),
        (404, FetchErrorKind.not_found),
        (400, FetchErrorKind.bad_request),
        (422, FetchErrorKind.bad_request),
        (500, FetchErrorKind.server_error),
        (503, FetchErrorKind.server_error),
    ],
)
def test_http_errors_are_classified(status_code: int, kind: FetchErrorKind) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"detail": "nope"})

    with pytest.raises(FetchError) as excinfo:
        _run(handler, lambda fetcher: fetcher.fetch_recent("lab", "aq", 5))

    assert excinfo.value.kind is kind
    assert excinfo.value.status_code == status_code
    assert "nope" in str(excinfo.value)
    assert classify_status(status_code) is kind


def test_validation_detail_list_is_flattened() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            422,
            json={"detail": [{"loc": ["query", "number"], "msg": "field required"}]},
        )

    with pytest.raises(FetchError) as excinfo:
        _run(handler, lambda fetcher: fetcher.fetch_recent("lab", "aq", 5))

    assert "query.number: field required" in str(excinfo.value)


def test_network_failure_is_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(FetchError) as excinfo:
        _run(handler, lambda fetcher: fetcher.fetch_recent("lab", "aq", 5))

    assert excinfo.value.kind is FetchErrorKind.unreachable
    assert excinfo.value.status_code is None


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<!DOCTYPE html><html><body>login</body></html>"),
        httpx.Response(200, json={"data": []}),
        httpx.Response(200, json=[1, 2]),
        httpx.Response(200, text="{broken"),
    ],
    ids=["html", "object", "scalar-rows", "invalid-json"],
)
def test_malformed_bodies_are_format_errors(response: httpx.Response) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    with pytest.raises(FetchError) as excinfo:
        _run(handler, lambda fetcher: fetcher.fetch_recent("lab", "aq", 5))

    assert excinfo.value.kind is FetchErrorKind.format_error


def test_invalid_arguments_fail_before_any_request() -> None:
    calls: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=[])

    with pytest.raises(ValidationError):
        _run(
            handler,
            lambda fetcher: fetcher.fetch_range("lab", "aq", datetime(2024, 3, 2), datetime(2024, 3, 1)),
        )
    with pytest.raises(ValidationError):
        _run(handler, lambda fetcher: fetcher.fetch_recent("lab", "aq", 0))

    assert calls == []


def test_credential_provider_overrides_static_token() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=[])

    async def scenario() -> None:
        async with SnapshotFetcher(
            BASE_URL,
            "static",
            credential_provider=lambda: "rotated",
            transport=httpx.MockTransport(handler),
        ) as fetcher:
            await fetcher.fetch_recent("lab", "aq", 1)

    asyncio.run(scenario())

    assert requests[0].headers["Authorization"] == "Bearer rotated"
