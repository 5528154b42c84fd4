"""Directional trailing stop-loss computation.

Pure functions over OHLC bars (most recent last). No I/O.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import pandas as pd

DEFAULT_LOOKBACK = 20
SUPPORTED_TIMEFRAMES = (1, 5, 15, 30, 45)


@dataclass(frozen=True)
class Candle:
    time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open


def _mean(values: list[Decimal]) -> Decimal:
    if not values:
        return Decimal("0")
    return sum(values, Decimal("0")) / len(values)


def next_stop(
    side: str,
    current_stop: Decimal,
    candles: list[Candle],
    lookback: int = DEFAULT_LOOKBACK,
) -> tuple[Decimal, bool]:
    """Return (new_stop, moved) for a held position.

    Long: requires a bullish previous bar; candidate is the lower of the average
    low over ``lookback`` bars and the previous bar's low. The stop only rises.

    Short: requires a bearish previous bar; candidate is the higher of the
    average high and the previous bar's high. The stop only falls.
    """
    if len(candles) < 2:
        return current_stop, False
    if lookback <= 0:
        lookback = DEFAULT_LOOKBACK
    lookback = min(lookback, len(candles))

    prev = candles[-2]
    window = candles[-lookback:]
    side = side.lower()

    if side == "long":
        if not prev.is_bullish:
            return current_stop, False
        candidate = min(_mean([c.low for c in window]), prev.low)
        if candidate > current_stop:
            return candidate, True
        return current_stop, False

    if side == "short":
        if not prev.is_bearish:
            return current_stop, False
        candidate = max(_mean([c.high for c in window]), prev.high)
        if candidate < current_stop:
            return candidate, True
        return current_stop, False

    return current_stop, False


def calc_stop_loss(entry_price: Decimal, pct: Decimal, side: str) -> Decimal:
    """Initial stop ``pct`` percent away from entry, on the losing side."""
    pct = Decimal(pct) / 100
    if side.lower() in ("buy", "long"):
        return entry_price * (1 - pct)
    if side.lower() in ("sell", "short"):
        return entry_price * (1 + pct)
    raise ValueError(f"Unknown side for stop loss: {side}")


def aggregate_from_1m(candles: list[Candle], timeframe_minutes: int) -> list[Candle]:
    """Bucket 1-minute bars into ``timeframe_minutes`` bars aligned to the Unix epoch."""
    if timeframe_minutes not in SUPPORTED_TIMEFRAMES:
        raise ValueError(f"Unsupported timeframe: {timeframe_minutes}m")
    if not candles or timeframe_minutes == 1:
        return list(candles)

    df = pd.DataFrame(
        {
            "open": [float(c.open) for c in candles],
            "high": [float(c.high) for c in candles],
            "low": [float(c.low) for c in candles],
            "close": [float(c.close) for c in candles],
            "volume": [float(c.volume) for c in candles],
        },
        index=pd.DatetimeIndex([pd.Timestamp(c.time) for c in candles]),
    ).sort_index()

    bars = (
        df.resample(f"{timeframe_minutes}min", origin="epoch", label="left", closed="left")
        .agg({"open": "first", "high": "max", "low": "min", "close": "last", "volume": "sum"})
        .dropna(subset=["open", "close"])
    )

    return [
        Candle(
            time=ts.to_pydatetime(),
            open=Decimal(str(row.open)),
            high=Decimal(str(row.high)),
            low=Decimal(str(row.low)),
            close=Decimal(str(row.close)),
            volume=Decimal(str(row.volume)),
        )
        for ts, row in bars.iterrows()
    ]
