"""Pydantic schemas for ExchangeAccount API."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

EXCHANGES = ("phemex", "kraken", "kucoin", "lighter")
TRIGGER_TYPES = ("mark", "last", "index")
TRAIL_TIMEFRAMES = (1, 5, 15, 30, 45)


def _validate_host(value: str | None) -> str | None:
    if value is None:
        return None
    host = value.strip()
    if not host:
        raise ValueError("must not be empty")
    if not (host.startswith("http://") or host.startswith("https://")):
        raise ValueError("must start with http:// or https://")
    return host.rstrip("/")


class _AccountFields(BaseModel):
    """Validators shared by create and update payloads."""

    @field_validator("name", check_fields=False)
    @classmethod
    def _trim_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("exchange", check_fields=False)
    @classmethod
    def _validate_exchange(cls, value: str | None) -> str | None:
        if value is None:
            return None
        name = value.strip().lower()
        if name not in EXCHANGES:
            raise ValueError(f"must be one of {', '.join(EXCHANGES)}")
        return name

    @field_validator("symbol", check_fields=False)
    @classmethod
    def _upper_symbol(cls, value: str | None) -> str | None:
        if value is None:
            return None
        text = value.strip().upper()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("stop_trigger_type", check_fields=False)
    @classmethod
    def _validate_trigger(cls, value: str | None) -> str | None:
        if value is not None and value not in TRIGGER_TYPES:
            raise ValueError(f"must be one of {', '.join(TRIGGER_TYPES)}")
        return value

    @field_validator("trail_timeframe_minutes", check_fields=False)
    @classmethod
    def _validate_timeframe(cls, value: int | None) -> int | None:
        if value is not None and value not in TRAIL_TIMEFRAMES:
            raise ValueError(f"must be one of {TRAIL_TIMEFRAMES}")
        return value

    @field_validator("lighter_host", check_fields=False)
    @classmethod
    def _check_host(cls, value: str | None) -> str | None:
        return _validate_host(value)


class AccountCreate(_AccountFields):
    name: str = Field(min_length=1, max_length=120)
    user_id: int = Field(ge=0)
    exchange: str
    symbol: str = "BTCUSD"
    signal_exchange_name: str | None = None

    # Plain credentials, encrypted before storage. For Lighter, api_secret is the private key.
    api_key: str | None = None
    api_secret: str | None = None
    api_passphrase: str | None = None
    testnet: bool = False
    lighter_host: str = "https://mainnet.zklighter.elliot.ai"
    lighter_api_key_index: int = Field(default=0, ge=0)
    lighter_account_index: int = Field(default=0, ge=0)

    run_on_server: bool = False
    schedule_seconds: int = Field(default=30, ge=5, le=3600)
    order_size_percent: float = Field(default=25.0, gt=0, le=100)
    stop_loss_pct: float = Field(default=1.0, gt=0, lt=100)
    stop_trigger_type: str = "mark"

    us_multiplier: float | None = Field(default=None, ge=0)
    london_multiplier: float | None = Field(default=None, ge=0)
    asia_multiplier: float | None = Field(default=None, ge=0)
    dead_zone_multiplier: float | None = Field(default=None, ge=0)
    weekend_holiday_multiplier: float | None = Field(default=None, ge=0)
    default_multiplier: float | None = Field(default=None, ge=0)
    enable_no_trade_window: bool = True

    news_gate_enabled: bool = True
    news_block_before_minutes: int = Field(default=15, ge=0, le=720)
    news_block_after_minutes: int = Field(default=15, ge=0, le=720)

    trail_timeframe_minutes: int = 15
    trail_lookback: int = Field(default=20, ge=1, le=500)

    @model_validator(mode="after")
    def _require_credentials(self):
        if self.exchange == "lighter":
            if not self.api_secret:
                raise ValueError("api_secret (Lighter private key) is required")
        elif not self.api_key or not self.api_secret:
            raise ValueError(f"api_key and api_secret are required for {self.exchange}")
        return self


class AccountUpdate(_AccountFields):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    symbol: str | None = None
    signal_exchange_name: str | None = None
    api_key: str | None = None  # If provided, re-encrypts
    api_secret: str | None = None
    api_passphrase: str | None = None
    testnet: bool | None = None
    lighter_host: str | None = None
    lighter_api_key_index: int | None = Field(default=None, ge=0)
    lighter_account_index: int | None = Field(default=None, ge=0)

    run_on_server: bool | None = None
    schedule_seconds: int | None = Field(default=None, ge=5, le=3600)
    order_size_percent: float | None = Field(default=None, gt=0, le=100)
    stop_loss_pct: float | None = Field(default=None, gt=0, lt=100)
    stop_trigger_type: str | None = None

    us_multiplier: float | None = Field(default=None, ge=0)
    london_multiplier: float | None = Field(default=None, ge=0)
    asia_multiplier: float | None = Field(default=None, ge=0)
    dead_zone_multiplier: float | None = Field(default=None, ge=0)
    weekend_holiday_multiplier: float | None = Field(default=None, ge=0)
    default_multiplier: float | None = Field(default=None, ge=0)
    enable_no_trade_window: bool | None = None

    news_gate_enabled: bool | None = None
    news_block_before_minutes: int | None = Field(default=None, ge=0, le=720)
    news_block_after_minutes: int | None = Field(default=None, ge=0, le=720)

    trail_timeframe_minutes: int | None = None
    trail_lookback: int | None = Field(default=None, ge=1, le=500)


class AccountRead(BaseModel):
    id: int
    name: str
    user_id: int
    exchange: str
    symbol: str
    signal_exchange_name: str | None
    api_key_masked: str = ""  # secrets are NEVER exposed
    testnet: bool
    lighter_host: str
    lighter_api_key_index: int
    lighter_account_index: int

    run_on_server: bool
    schedule_seconds: int
    order_size_percent: float
    stop_loss_pct: float
    stop_trigger_type: str

    us_multiplier: float | None
    london_multiplier: float | None
    asia_multiplier: float | None
    dead_zone_multiplier: float | None
    weekend_holiday_multiplier: float | None
    default_multiplier: float | None
    enable_no_trade_window: bool

    news_gate_enabled: bool
    news_block_before_minutes: int
    news_block_after_minutes: int

    trail_timeframe_minutes: int
    trail_lookback: int

    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
