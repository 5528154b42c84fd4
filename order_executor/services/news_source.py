"""Economic calendar sources for the news gate.

TradingView's public calendar is polled by a scheduler job and stored in
``news_event``; ticks read the stored copy through ``StoredNewsSource``.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

import httpx
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from order_executor.models.news_event import NewsEventRecord
from order_executor.services.news_gate import HIGH_IMPORTANCE, NewsEvent

logger = logging.getLogger(__name__)

TV_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.000Z"


class NewsSourceError(Exception):
    pass


class NewsSource(ABC):
    @abstractmethod
    async def fetch_important_events(
        self,
        from_utc: datetime,
        to_utc: datetime,
        countries: list[str],
    ) -> list[NewsEvent]:
        """High-importance events with a time inside [from_utc, to_utc]."""


def parse_tv_time(value: str | None) -> datetime | None:
    """Parse ``2025-12-08T16:00:00.000Z`` / RFC 3339 timestamps; empty gives None."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise NewsSourceError(f"Unparseable event time {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class TradingViewNewsSource(NewsSource):
    """Client for the TradingView economic calendar."""

    BASE_URL = "https://economic-calendar.tradingview.com/events"
    TIMEOUT = 15.0
    HEADERS = {
        "accept": "application/json",
        "accept-language": "en-GB,en;q=0.9",
        "origin": "https://www.tradingview.com",
        "referer": "https://www.tradingview.com/",
        "user-agent": (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36"
        ),
    }

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = TIMEOUT):
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "TradingViewNewsSource":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def fetch_important_events(
        self,
        from_utc: datetime,
        to_utc: datetime,
        countries: list[str],
    ) -> list[NewsEvent]:
        client = await self._get_client()
        params = {
            "from": from_utc.astimezone(timezone.utc).strftime(TV_TIME_FORMAT),
            "to": to_utc.astimezone(timezone.utc).strftime(TV_TIME_FORMAT),
            "countries": ",".join(countries),
        }
        try:
            response = await client.get(self.BASE_URL, params=params, headers=self.HEADERS)
        except httpx.HTTPError as e:
            raise NewsSourceError(f"TradingView request failed: {e}") from e

        if not response.is_success:
            raise NewsSourceError(
                f"TradingView unexpected status {response.status_code}: {response.text[:500]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise NewsSourceError(f"TradingView returned invalid JSON: {e}") from e

        status = body.get("status", "")
        if status not in ("ok", ""):
            raise NewsSourceError(f"TradingView unexpected status field: {status!r}")

        results = body.get("result") or []
        logger.info(f"Fetched {len(results)} calendar events from TradingView")

        events = []
        for raw in results:
            if raw.get("importance") != HIGH_IMPORTANCE:
                continue
            events.append(NewsEvent(
                id=str(raw.get("id", "")),
                title=raw.get("title", ""),
                country=raw.get("country", ""),
                importance=raw["importance"],
                event_time=parse_tv_time(raw.get("date")),
            ))
        return events


class StoredNewsSource(NewsSource):
    """Reads events previously saved by ``refresh_news_events``."""

    def __init__(self, engine: Engine):
        self.engine = engine

    async def fetch_important_events(
        self,
        from_utc: datetime,
        to_utc: datetime,
        countries: list[str],
    ) -> list[NewsEvent]:
        wanted = [c.upper() for c in countries]
        with Session(self.engine) as session:
            stmt = (
                select(NewsEventRecord)
                .where(NewsEventRecord.importance == HIGH_IMPORTANCE)
                .where(NewsEventRecord.event_time >= from_utc)
                .where(NewsEventRecord.event_time <= to_utc)
            )
            if wanted:
                stmt = stmt.where(NewsEventRecord.country.in_(wanted))
            rows = session.exec(stmt.order_by(NewsEventRecord.event_time)).all()

        return [
            NewsEvent(
                id=row.id,
                title=row.title,
                country=row.country,
                importance=row.importance,
                event_time=row.event_time.replace(tzinfo=timezone.utc)
                if row.event_time and row.event_time.tzinfo is None else row.event_time,
            )
            for row in rows
        ]


async def refresh_news_events(
    engine: Engine,
    source: NewsSource,
    countries: list[str],
    now: datetime | None = None,
) -> int:
    """Fetch yesterday through the coming week and upsert by event id."""
    now = now or datetime.now(timezone.utc)
    events = await source.fetch_important_events(
        now - timedelta(days=1), now + timedelta(days=7), countries
    )

    with Session(engine) as session:
        for ev in events:
            row = session.get(NewsEventRecord, ev.id)
            if row is None:
                row = NewsEventRecord(id=ev.id, title=ev.title, country=ev.country)
            row.title = ev.title
            row.country = ev.country.upper()
            row.importance = ev.importance
            row.event_time = ev.event_time
            row.source = "tradingview"
            row.fetched_at = now
            session.add(row)
        session.commit()

    logger.info(f"Stored {len(events)} high-importance calendar events")
    return len(events)
