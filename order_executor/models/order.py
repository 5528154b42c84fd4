"""Order model: one row per (user, signal, direction)."""

from datetime import datetime, timezone

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_FILLED = "filled"
ORDER_STATUS_ERROR = "error"
ORDER_STATUS_CANCELED = "canceled"
ORDER_STATUS_CANCELED_ERROR = "canceled_error"

ORDER_DIR_ENTRY = "entry"
ORDER_DIR_EXIT = "exit"

# pending is the only non-terminal status
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    ORDER_STATUS_PENDING: {
        ORDER_STATUS_FILLED,
        ORDER_STATUS_ERROR,
        ORDER_STATUS_CANCELED,
        ORDER_STATUS_CANCELED_ERROR,
    },
}


class Order(SQLModel, table=True):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("user_id", "external_id", "order_dir", name="uq_orders_idempotency_key"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    exchange_id: int = Field(foreign_key="exchange_account.id", index=True)
    external_id: str = Field(index=True)  # trading signal id
    symbol: str
    side: str  # "Buy" / "Sell"
    pos_side: str  # "Long" / "Short"
    order_type: str = "Market"
    quantity: float
    price: float | None = None  # reference price at sizing time
    fill_price: float | None = None  # position entry price once verified
    stop_loss_pct: float | None = None
    stop_loss_price: float | None = None  # current protective stop
    status: str = ORDER_STATUS_PENDING
    order_dir: str = ORDER_DIR_ENTRY
    reason: str | None = None
    raw_response: str | None = None
    executed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
