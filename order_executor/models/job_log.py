"""JobLog model: per-tick execution log for each exchange account."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class JobLog(SQLModel, table=True):
    __tablename__ = "job_log"

    id: int | None = Field(default=None, primary_key=True)
    account_id: int = Field(foreign_key="exchange_account.id", index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: str  # "success", "error", "skipped"
    action: str | None = None  # "filled", "stop_moved", "no_signal", "blocked_by_news", ...
    session: str | None = None  # risk session tag
    order_id: int | None = None
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
