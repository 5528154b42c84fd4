"""Tests for the TradingView calendar client and the stored-event source."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from order_executor.services.news_source import (
    NewsSourceError,
    StoredNewsSource,
    TradingViewNewsSource,
    parse_tv_time,
    refresh_news_events,
)

FROM = datetime(2025, 12, 8, tzinfo=timezone.utc)
TO = datetime(2025, 12, 9, tzinfo=timezone.utc)

PAYLOAD = {
    "status": "ok",
    "result": [
        {"id": "1", "title": "CPI YoY", "country": "US", "importance": 1, "date": "2025-12-08T13:30:00.000Z"},
        {"id": "2", "title": "Redbook", "country": "US", "importance": -1, "date": "2025-12-08T13:55:00.000Z"},
        {"id": "3", "title": "FOMC", "country": "US", "importance": 1, "date": "2025-12-08T19:00:00.000Z"},
    ],
}


def _source(handler) -> TradingViewNewsSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TradingViewNewsSource(client=client)


# ---------------------------------------------------------------------------
# 1. TradingView client
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fetch_filters_high_importance_and_sends_window():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(dict(request.url.params))
        seen["origin"] = request.headers.get("origin")
        return httpx.Response(200, json=PAYLOAD)

    events = await _source(handler).fetch_important_events(FROM, TO, ["US", "EU"])

    assert [e.id for e in events] == ["1", "3"]
    assert events[0].event_time == datetime(2025, 12, 8, 13, 30, tzinfo=timezone.utc)
    assert seen["from"] == "2025-12-08T00:00:00.000Z"
    assert seen["to"] == "2025-12-09T00:00:00.000Z"
    assert seen["countries"] == "US,EU"
    assert seen["origin"] == "https://www.tradingview.com"


@pytest.mark.asyncio
async def test_http_error_status_raises():
    source = _source(lambda request: httpx.Response(503, text="unavailable"))
    with pytest.raises(NewsSourceError, match="503"):
        await source.fetch_important_events(FROM, TO, ["US"])


@pytest.mark.asyncio
async def test_bad_status_field_raises():
    source = _source(lambda request: httpx.Response(200, json={"status": "error", "result": []}))
    with pytest.raises(NewsSourceError, match="status field"):
        await source.fetch_important_events(FROM, TO, ["US"])


@pytest.mark.asyncio
async def test_invalid_json_raises():
    source = _source(lambda request: httpx.Response(200, content=b"<html>"))
    with pytest.raises(NewsSourceError, match="invalid JSON"):
        await source.fetch_important_events(FROM, TO, ["US"])


@pytest.mark.asyncio
async def test_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NewsSourceError, match="request failed"):
        await _source(handler).fetch_important_events(FROM, TO, ["US"])


def test_parse_tv_time():
    assert parse_tv_time("2025-12-08T16:00:00.000Z") == datetime(2025, 12, 8, 16, tzinfo=timezone.utc)
    assert parse_tv_time("") is None
    with pytest.raises(NewsSourceError):
        parse_tv_time("next tuesday")


# ---------------------------------------------------------------------------
# 2. Refresh + stored source
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_refresh_then_read_back(engine):
    body = json.dumps(PAYLOAD).encode()
    source = _source(lambda request: httpx.Response(200, content=body))
    now = datetime(2025, 12, 8, 12, tzinfo=timezone.utc)

    assert await refresh_news_events(engine, source, ["US"], now=now) == 2
    # second refresh upserts rather than duplicating
    assert await refresh_news_events(engine, source, ["US"], now=now) == 2

    stored = await StoredNewsSource(engine).fetch_important_events(now, now + timedelta(hours=12), ["us"])
    assert [e.title for e in stored] == ["CPI YoY", "FOMC"]
    assert stored[0].event_time.tzinfo is not None


@pytest.mark.asyncio
async def test_stored_source_filters_country_and_window(engine):
    source = _source(lambda request: httpx.Response(200, json=PAYLOAD))
    now = datetime(2025, 12, 8, 12, tzinfo=timezone.utc)
    await refresh_news_events(engine, source, ["US"], now=now)

    stored = StoredNewsSource(engine)
    assert await stored.fetch_important_events(now, now + timedelta(hours=2), ["US"]) != []
    assert await stored.fetch_important_events(now, now + timedelta(hours=1), ["US"]) == []
    assert await stored.fetch_important_events(now, now + timedelta(hours=12), ["EU"]) == []
