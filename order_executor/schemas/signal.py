"""Pydantic schemas for TradingSignal API."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

ACTIONS = ("buy", "sell")
POSITION_LABELS = ("long", "short", "flat")


class SignalCreate(BaseModel):
    symbol: str = Field(min_length=1, max_length=40)
    action: str
    position_label: str | None = None
    order_type: str = "market"
    quantity: float | None = Field(default=None, gt=0)
    price: float | None = Field(default=None, gt=0)
    exchange_name: str = Field(min_length=1, max_length=40)
    strategy: str | None = None

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, value: str) -> str:
        text = value.strip().upper()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("action")
    @classmethod
    def _validate_action(cls, value: str) -> str:
        action = value.strip().lower()
        if action not in ACTIONS:
            raise ValueError(f"must be one of {', '.join(ACTIONS)}")
        return action

    @field_validator("position_label")
    @classmethod
    def _validate_label(cls, value: str | None) -> str | None:
        if value is None:
            return None
        label = value.strip().lower()
        if label not in POSITION_LABELS:
            raise ValueError(f"must be one of {', '.join(POSITION_LABELS)}")
        return label

    @field_validator("exchange_name")
    @classmethod
    def _lower_exchange(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def _label_matches_action(self):
        expected = "long" if self.action == "buy" else "short"
        if self.position_label in ("long", "short") and self.position_label != expected:
            raise ValueError(f"position_label {self.position_label!r} contradicts action {self.action!r}")
        return self


class SignalRead(BaseModel):
    id: int
    symbol: str
    action: str
    position_label: str | None
    order_type: str
    quantity: float | None
    price: float | None
    exchange_name: str
    strategy: str | None
    received_at: datetime

    model_config = {"from_attributes": True}
