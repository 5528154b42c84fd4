"""Candle data for stop-loss trailing.

One-minute bars come from Hyperliquid's public API (no auth needed) and are
bucketed into the account's trailing timeframe.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from hyperliquid.info import Info

from order_executor.services.stop_loss_trail import Candle, aggregate_from_1m
from order_executor.utils.trading import base_asset

logger = logging.getLogger(__name__)


class CandleSource(ABC):
    @abstractmethod
    async def fetch_candles(self, symbol: str, timeframe_minutes: int, count: int) -> list[Candle]:
        """The last ``count`` bars of ``timeframe_minutes``, most recent last."""


def to_hl_ticker(symbol: str) -> str:
    """Convert BTCUSDT / 1000BONKUSDT to Hyperliquid names (BTC / kBONK)."""
    asset = base_asset(symbol)
    if asset.startswith("1000"):
        return "k" + asset[4:]
    return asset


def parse_candles(candles: list[dict]) -> list[Candle]:
    """Parse candles_snapshot rows.

    Each row: {"t": 1772092800000, "s": "SOL", "i": "1m",
               "o": "87.212", "c": "87.498", "h": "87.811", "l": "87.212", "v": "12.3"}
    """
    parsed = []
    for c in candles:
        if c.get("c") is None or c.get("o") is None:
            continue
        parsed.append(Candle(
            time=datetime.fromtimestamp(int(c["t"]) / 1000, tz=timezone.utc),
            open=Decimal(str(c["o"])),
            high=Decimal(str(c["h"])),
            low=Decimal(str(c["l"])),
            close=Decimal(str(c["c"])),
            volume=Decimal(str(c.get("v", "0"))),
        ))
    parsed.sort(key=lambda candle: candle.time)
    return parsed


class HyperliquidCandleSource(CandleSource):
    def __init__(self, base_url: str | None = None, info: Info | None = None):
        self.base_url = base_url
        self._info = info

    def _get_info(self) -> Info:
        if self._info is None:
            self._info = Info(base_url=self.base_url, skip_ws=True) if self.base_url else Info(skip_ws=True)
        return self._info

    async def fetch_candles(self, symbol: str, timeframe_minutes: int, count: int) -> list[Candle]:
        ticker = to_hl_ticker(symbol)
        now = datetime.now(timezone.utc)
        minutes = int(timeframe_minutes * count * 1.2) + timeframe_minutes  # 20% buffer plus one bucket
        start_ms = int((now - timedelta(minutes=minutes)).timestamp() * 1000)
        end_ms = int(now.timestamp() * 1000)

        # candles_snapshot is synchronous, run in executor to avoid blocking
        raw = await asyncio.get_running_loop().run_in_executor(
            None, self._get_info().candles_snapshot, ticker, "1m", start_ms, end_ms
        )
        bars = aggregate_from_1m(parse_candles(raw), timeframe_minutes)
        logger.debug(f"Fetched {len(bars)} {timeframe_minutes}m bars for {ticker}")
        return bars[-count:]
