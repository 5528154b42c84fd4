"""ExceptionLog model: captured failures for operator review."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class ExceptionLog(SQLModel, table=True):
    __tablename__ = "exception_log"

    id: int | None = Field(default=None, primary_key=True)
    service: str
    module: str = Field(index=True)
    method: str
    message: str
    stack: str | None = None
    level: str = "error"
    context: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
