"""Session-based position sizing.

Sessions are classified on New York civil time. All functions are pure:
the same ``now`` and multiplier table always give the same result.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from zoneinfo import ZoneInfo

NY_TZ = ZoneInfo("America/New_York")

ONE = Decimal("1")
ZERO = Decimal("0")


class RiskSession(str, Enum):
    WEEKEND_HOLIDAY = "weekend_holiday"
    DEAD_ZONE = "dead_zone"
    ASIA = "asia_session"
    LONDON = "london_session"
    US = "us_session"
    DEFAULT = "default"
    NO_TRADE = "no_trade"


@dataclass(frozen=True)
class SessionMultipliers:
    """Per-user size multipliers. ``None`` means 1.0."""

    us: Decimal | None = None
    london: Decimal | None = None
    asia: Decimal | None = None
    dead_zone: Decimal | None = None
    weekend_holiday: Decimal | None = None
    default: Decimal | None = None
    enable_no_trade_window: bool = True

    def for_session(self, session: RiskSession) -> Decimal:
        value = {
            RiskSession.US: self.us,
            RiskSession.LONDON: self.london,
            RiskSession.ASIA: self.asia,
            RiskSession.DEAD_ZONE: self.dead_zone,
            RiskSession.WEEKEND_HOLIDAY: self.weekend_holiday,
        }.get(session, self.default)
        return ONE if value is None else Decimal(value)


def size(
    base_qty: Decimal,
    now: datetime,
    multipliers: SessionMultipliers,
) -> tuple[Decimal, RiskSession]:
    """Scale ``base_qty`` by the multiplier of the session active at ``now``.

    Returns (0, NO_TRADE) inside the weekend/holiday no-trade window or when the
    session multiplier is zero. A non-positive base quantity returns (0, DEFAULT).
    """
    if base_qty <= ZERO:
        return ZERO, RiskSession.DEFAULT

    ny = to_new_york(now)

    if multipliers.enable_no_trade_window and is_no_trade_window(ny):
        return ZERO, RiskSession.NO_TRADE

    session = detect_session(ny)
    mult = multipliers.for_session(session)
    if mult == ZERO:
        return ZERO, RiskSession.NO_TRADE

    return base_qty * mult, session


def to_new_york(now: datetime) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(NY_TZ)


# ---------------------------------------------------------------------------
# Session windows (hours in New York time)
# ---------------------------------------------------------------------------

def _is_dead_zone(t: datetime) -> bool:
    return 17 <= t.hour < 20


def _is_asia(t: datetime) -> bool:
    return t.hour >= 20 or t.hour < 3


def _is_london(t: datetime) -> bool:
    return 3 <= t.hour < 9


def _is_us(t: datetime) -> bool:
    return 9 <= t.hour <= 17


def is_no_trade_window(t: datetime) -> bool:
    """Friday 09:00 through Sunday 03:00 NY, plus US market holidays.

    Sunday inside London hours is always open, holiday or not.
    """
    weekday = t.weekday()  # Monday == 0
    if weekday == 6 and _is_london(t):
        return False

    if is_us_holiday(t.date()):
        return True

    if weekday == 4:
        return t.hour >= 9
    if weekday == 5:
        return True
    if weekday == 6:
        return t.hour < 3
    return False


def detect_session(t: datetime) -> RiskSession:
    weekday = t.weekday()
    if weekday == 6 and _is_london(t):
        return RiskSession.LONDON

    if weekday in (5, 6) or is_us_holiday(t.date()):
        return RiskSession.WEEKEND_HOLIDAY

    # dead zone wins over US at 17h
    if _is_dead_zone(t):
        return RiskSession.DEAD_ZONE
    if _is_asia(t):
        return RiskSession.ASIA
    if _is_london(t):
        return RiskSession.LONDON
    if _is_us(t):
        return RiskSession.US
    return RiskSession.DEFAULT


# ---------------------------------------------------------------------------
# US market holidays
# ---------------------------------------------------------------------------

def _nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + (n - 1) * 7)


def _last_weekday(year: int, month: int, weekday: int) -> date:
    day = date(year, month + 1, 1) - timedelta(days=1)
    while day.weekday() != weekday:
        day -= timedelta(days=1)
    return day


def _observed(day: date) -> date:
    # Sunday holidays move to Monday
    if day.weekday() == 6:
        return day + timedelta(days=1)
    return day


def us_holidays(year: int) -> set[date]:
    return {
        _observed(date(year, 1, 1)),
        _nth_weekday(year, 1, 0, 3),  # Martin Luther King Jr. Day
        _nth_weekday(year, 2, 0, 3),  # Presidents' Day
        _last_weekday(year, 5, 0),  # Memorial Day
        _observed(date(year, 7, 4)),
        _nth_weekday(year, 9, 0, 1),  # Labor Day
        _nth_weekday(year, 11, 3, 4),  # Thanksgiving
        _observed(date(year, 12, 25)),
    }


def is_us_holiday(day: date) -> bool:
    return day in us_holidays(day.year)
