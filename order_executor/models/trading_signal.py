"""TradingSignal model: decisions produced by the external signal generator."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class TradingSignal(SQLModel, table=True):
    __tablename__ = "trading_signal"

    id: int | None = Field(default=None, primary_key=True)
    symbol: str = Field(index=True)  # as emitted, e.g. "BTCUSD"
    action: str  # "buy" / "sell"
    position_label: str  # "long" / "short"
    order_type: str = "market"
    quantity: float | None = None
    price: float | None = None
    exchange_name: str = Field(index=True)
    strategy: str | None = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
