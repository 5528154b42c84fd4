"""NewsEventRecord model: stored economic calendar events."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class NewsEventRecord(SQLModel, table=True):
    __tablename__ = "news_event"

    id: str = Field(primary_key=True)  # TradingView event id
    title: str
    country: str = Field(index=True)
    indicator: str | None = None
    importance: int = 0
    event_time: datetime | None = Field(default=None, index=True)
    source: str | None = None
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
