"""Economic calendar API: stored events and the current gate decision."""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from order_executor.api.deps import get_current_user
from order_executor.config import settings
from order_executor.database import engine, get_session
from order_executor.models.news_event import NewsEventRecord
from order_executor.services.news_gate import can_enter_trade_at
from order_executor.services.news_source import NewsSourceError, StoredNewsSource, TradingViewNewsSource, refresh_news_events

router = APIRouter(prefix="/api/news", tags=["news"], dependencies=[Depends(get_current_user)])


@router.get("")
def list_events(
    hours_back: int = 24,
    hours_ahead: int = 168,
    session: Session = Depends(get_session),
):
    now = datetime.now(timezone.utc)
    stmt = (
        select(NewsEventRecord)
        .where(NewsEventRecord.event_time >= now - timedelta(hours=hours_back))
        .where(NewsEventRecord.event_time <= now + timedelta(hours=hours_ahead))
        .order_by(NewsEventRecord.event_time)
    )
    return session.exec(stmt).all()


@router.get("/gate")
async def gate_decision(block_before_minutes: int = 15, block_after_minutes: int = 15):
    """Would an entry be allowed right now?"""
    now = datetime.now(timezone.utc)
    lookaround = timedelta(hours=settings.news_lookaround_hours)
    events = await StoredNewsSource(engine).fetch_important_events(
        now - lookaround, now + lookaround, settings.news_countries
    )
    decision = can_enter_trade_at(
        now, events, timedelta(minutes=block_before_minutes), timedelta(minutes=block_after_minutes)
    )
    return decision.to_dict()


@router.post("/refresh")
async def refresh_events():
    async with TradingViewNewsSource() as source:
        try:
            count = await refresh_news_events(engine, source, settings.news_countries)
        except NewsSourceError as e:
            raise HTTPException(status_code=502, detail=str(e))
    return {"status": "ok", "events": count}
