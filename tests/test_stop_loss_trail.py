"""Tests for trailing stop computation, initial stop and bar aggregation."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from order_executor.services.stop_loss_trail import (
    Candle,
    aggregate_from_1m,
    calc_stop_loss,
    next_stop,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def bars(*ohlc) -> list[Candle]:
    return [
        Candle(
            time=T0 + timedelta(minutes=15 * i),
            open=Decimal(str(o)),
            high=Decimal(str(h)),
            low=Decimal(str(lo)),
            close=Decimal(str(c)),
        )
        for i, (o, h, lo, c) in enumerate(ohlc)
    ]


# ---------------------------------------------------------------------------
# 1. Long trailing
# ---------------------------------------------------------------------------

class TestLongTrail:
    def test_moves_to_previous_low(self):
        candles = bars(
            (110, 111, 100, 110),
            (110, 112, 101, 111),
            (100, 130, 100.50, 120),
            (120, 121, 119, 120),
        )
        stop, moved = next_stop("long", Decimal("99"), candles, lookback=3)
        assert moved
        assert stop == Decimal("100.50")

    def test_moves_to_average_low(self):
        candles = bars(
            (110, 111, 100, 110),
            (110, 112, 100, 111),
            (120, 130, 110, 125),
            (125, 126, 124, 125),
        )
        stop, moved = next_stop("long", Decimal("95"), candles, lookback=2)
        assert moved
        assert stop == Decimal("110")

    def test_never_lowers(self):
        candles = bars(
            (110, 111, 100, 110),
            (110, 112, 100, 111),
            (120, 130, 110, 125),
            (125, 126, 124, 125),
        )
        stop, moved = next_stop("long", Decimal("110"), candles, lookback=2)
        assert not moved
        assert stop == Decimal("110")

    def test_bearish_previous_bar_holds(self):
        candles = bars((100, 101, 99, 100), (120, 121, 110, 111), (111, 112, 110, 112))
        assert next_stop("Long", Decimal("50"), candles) == (Decimal("50"), False)


# ---------------------------------------------------------------------------
# 2. Short trailing
# ---------------------------------------------------------------------------

class TestShortTrail:
    def test_moves_down(self):
        candles = bars(
            (100, 105, 95, 100),
            (100, 101, 90, 92),
            (92, 93, 88, 89),
        )
        stop, moved = next_stop("short", Decimal("120"), candles, lookback=3)
        assert moved
        # max(avg high 99.666.., prev high 101)
        assert stop == Decimal("101")

    def test_never_raises(self):
        candles = bars((100, 105, 95, 100), (100, 101, 90, 92), (92, 93, 88, 89))
        assert next_stop("short", Decimal("95"), candles, lookback=3) == (Decimal("95"), False)


# ---------------------------------------------------------------------------
# 3. Trailing across successive windows
# ---------------------------------------------------------------------------

RISING = [100 + i for i in range(20)]
FALLING = [200 - i for i in range(20)]
CHOPPY = [100, 102, 104, 106, 104, 102, 100, 98, 100, 103, 106, 109, 107, 105, 108, 111, 110, 112]


def alternating_bars(bases: list[int]) -> list[Candle]:
    """Bars alternating bullish / bearish around each base price."""
    ohlc = []
    for i, base in enumerate(bases):
        if i % 2 == 0:
            ohlc.append((base, base + 2, base - 1, base + 1))
        else:
            ohlc.append((base + 1, base + 2, base - 1, base))
    return bars(*ohlc)


def trail(side: str, start: Decimal, series: list[Candle], width: int = 5) -> list[tuple[Decimal, bool, Candle]]:
    stop = start
    steps = []
    for end in range(width, len(series) + 1):
        window = series[end - width:end]
        stop, moved = next_stop(side, stop, window, lookback=3)
        steps.append((stop, moved, window[-2]))
    return steps


@pytest.mark.parametrize("bases", [RISING, CHOPPY])
def test_long_stop_never_decreases(bases):
    steps = trail("long", Decimal("90"), alternating_bars(bases))
    stops = [s for s, _, _ in steps]

    assert stops == sorted(stops)
    assert any(moved for _, moved, _ in steps)
    assert any(not moved for _, moved, _ in steps)
    for stop, moved, prev in steps:
        if moved:
            assert prev.is_bullish
            assert stop <= prev.low


@pytest.mark.parametrize("bases", [FALLING, [300 - b for b in CHOPPY]])
def test_short_stop_never_increases(bases):
    steps = trail("short", Decimal("250"), alternating_bars(bases))
    stops = [s for s, _, _ in steps]

    assert stops == sorted(stops, reverse=True)
    assert any(moved for _, moved, _ in steps)
    assert any(not moved for _, moved, _ in steps)
    for stop, moved, prev in steps:
        if moved:
            assert prev.is_bearish
            assert stop >= prev.high


# ---------------------------------------------------------------------------
# 4. Edge cases
# ---------------------------------------------------------------------------

def test_too_few_candles():
    assert next_stop("long", Decimal("1"), bars((1, 2, 0.5, 1.5))) == (Decimal("1"), False)


def test_unknown_side_holds():
    candles = bars((1, 2, 0.5, 1.5), (1, 2, 0.5, 1.5), (1, 2, 0.5, 1.5))
    assert next_stop("flat", Decimal("1"), candles) == (Decimal("1"), False)


def test_lookback_clamped_to_available():
    candles = bars((110, 111, 100, 110), (110, 112, 101, 111), (111, 113, 102, 112))
    stop, moved = next_stop("long", Decimal("0"), candles, lookback=50)
    assert moved
    assert stop == Decimal("101")


# ---------------------------------------------------------------------------
# 5. Initial stop
# ---------------------------------------------------------------------------

class TestCalcStopLoss:
    def test_long(self):
        assert calc_stop_loss(Decimal("100"), Decimal("1"), "Long") == Decimal("99")

    def test_buy_alias(self):
        assert calc_stop_loss(Decimal("200"), Decimal("2.5"), "buy") == Decimal("195")

    def test_short(self):
        assert calc_stop_loss(Decimal("100"), Decimal("1"), "short") == Decimal("101")

    def test_unknown_side(self):
        with pytest.raises(ValueError):
            calc_stop_loss(Decimal("100"), Decimal("1"), "sideways")


# ---------------------------------------------------------------------------
# 6. 1m aggregation
# ---------------------------------------------------------------------------

def _minute_bars(n: int, start: datetime) -> list[Candle]:
    return [
        Candle(
            time=start + timedelta(minutes=i),
            open=Decimal(100 + i),
            high=Decimal(101 + i),
            low=Decimal(99 + i),
            close=Decimal("100.5") + i,
            volume=Decimal("1"),
        )
        for i in range(n)
    ]


def test_aggregate_five_minute_buckets():
    out = aggregate_from_1m(_minute_bars(10, T0), 5)
    assert len(out) == 2
    first = out[0]
    assert first.time == T0
    assert first.open == Decimal("100")
    assert first.high == Decimal("105")
    assert first.low == Decimal("99")
    assert first.close == Decimal("104.5")
    assert first.volume == Decimal("5")


def test_aggregate_aligns_to_epoch():
    # starting at :03 the first 5m bucket is :00-:05 with only two bars
    out = aggregate_from_1m(_minute_bars(4, T0 + timedelta(minutes=3)), 5)
    assert [c.time for c in out] == [T0, T0 + timedelta(minutes=5)]


def test_aggregate_one_minute_passthrough():
    src = _minute_bars(3, T0)
    assert aggregate_from_1m(src, 1) == src


def test_aggregate_rejects_unsupported_timeframe():
    with pytest.raises(ValueError):
        aggregate_from_1m(_minute_bars(3, T0), 7)
