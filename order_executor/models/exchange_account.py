"""ExchangeAccount model: per user/exchange trading configuration and credentials."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class ExchangeAccount(SQLModel, table=True):
    __tablename__ = "exchange_account"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    user_id: int = Field(index=True)
    exchange: str  # "phemex", "kraken", "kucoin", "lighter"
    symbol: str = "BTCUSD"  # signal symbol to follow
    signal_exchange_name: str | None = None  # defaults to exchange

    # Credentials (Fernet-encrypted)
    api_key_encrypted: str = ""
    api_secret_encrypted: str = ""
    api_passphrase_encrypted: str = ""
    testnet: bool = False
    lighter_host: str = "https://mainnet.zklighter.elliot.ai"
    lighter_api_key_index: int = 0
    lighter_account_index: int = 0

    # Execution
    run_on_server: bool = False
    schedule_seconds: int = 30
    order_size_percent: float = 25.0
    stop_loss_pct: float = 1.0
    stop_trigger_type: str = "mark"

    # Session multipliers, None means 1.0
    us_multiplier: float | None = None
    london_multiplier: float | None = None
    asia_multiplier: float | None = None
    dead_zone_multiplier: float | None = None
    weekend_holiday_multiplier: float | None = None
    default_multiplier: float | None = None
    enable_no_trade_window: bool = True

    # News gate
    news_gate_enabled: bool = True
    news_block_before_minutes: int = 15
    news_block_after_minutes: int = 15

    # Trailing stop
    trail_timeframe_minutes: int = 15
    trail_lookback: int = 20

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def signal_exchange(self) -> str:
        return self.signal_exchange_name or self.exchange
