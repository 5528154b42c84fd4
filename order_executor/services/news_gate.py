"""News-event trading gate.

Blocks new entries while ``now`` sits inside
``[event_time - block_before, event_time + block_after]`` of any high-importance
macro event. Both boundaries are inclusive.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

HIGH_IMPORTANCE = 1
DEFAULT_BLOCK_BEFORE = timedelta(minutes=15)
DEFAULT_BLOCK_AFTER = timedelta(minutes=15)

REASON_ALLOWED = "allowed"
REASON_BLOCKED = "blocked_by_news_window"


@dataclass(frozen=True)
class NewsEvent:
    id: str
    title: str
    country: str
    importance: int
    event_time: datetime | None


@dataclass(frozen=True)
class TradeGateDecision:
    allowed: bool
    reason: str
    now_utc: datetime
    blocking_event: NewsEvent | None = None
    block_window_from: datetime | None = None
    block_window_to: datetime | None = None
    next_allowed_utc: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "now_utc": self.now_utc.isoformat(),
            "blocking_event": (
                {
                    "id": self.blocking_event.id,
                    "title": self.blocking_event.title,
                    "country": self.blocking_event.country,
                    "event_time": self.blocking_event.event_time.isoformat()
                    if self.blocking_event.event_time else None,
                }
                if self.blocking_event else None
            ),
            "block_window_from": self.block_window_from.isoformat() if self.block_window_from else None,
            "block_window_to": self.block_window_to.isoformat() if self.block_window_to else None,
            "next_allowed_utc": self.next_allowed_utc.isoformat() if self.next_allowed_utc else None,
        }


def _utc(t: datetime) -> datetime:
    if t.tzinfo is None:
        return t.replace(tzinfo=timezone.utc)
    return t.astimezone(timezone.utc)


def can_enter_trade_at(
    now: datetime,
    events: list[NewsEvent],
    block_before: timedelta = DEFAULT_BLOCK_BEFORE,
    block_after: timedelta = DEFAULT_BLOCK_AFTER,
) -> TradeGateDecision:
    """Decide whether a new position may be opened at ``now``.

    When several windows are active the one ending last is reported, so
    ``next_allowed_utc`` is the moment every window has cleared.
    """
    now = _utc(now)
    block: tuple[NewsEvent, datetime, datetime] | None = None

    for ev in events:
        if ev.importance != HIGH_IMPORTANCE or ev.event_time is None:
            continue
        event_time = _utc(ev.event_time)
        start = event_time - block_before
        end = event_time + block_after
        if start <= now <= end and (block is None or end > block[2]):
            block = (ev, start, end)

    if block is None:
        return TradeGateDecision(allowed=True, reason=REASON_ALLOWED, now_utc=now)

    ev, start, end = block
    return TradeGateDecision(
        allowed=False,
        reason=REASON_BLOCKED,
        now_utc=now,
        blocking_event=ev,
        block_window_from=start,
        block_window_to=end,
        next_allowed_utc=end,
    )
