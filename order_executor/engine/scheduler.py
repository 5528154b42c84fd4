"""APScheduler integration for FastAPI.

Manages one interval job per enabled exchange account plus the economic
calendar refresh job.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import Session, select

from order_executor.config import settings
from order_executor.database import engine
from order_executor.models.exchange_account import ExchangeAccount

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

NEWS_JOB_ID = "news_refresh"
MIN_SCHEDULE_SECONDS = 5


def _job_id(account_id: int) -> str:
    return f"account_{account_id}"


def _get_trigger(schedule_seconds: int) -> IntervalTrigger:
    return IntervalTrigger(seconds=max(MIN_SCHEDULE_SECONDS, int(schedule_seconds)))


def add_account_job(account_id: int, schedule_seconds: int):
    """Add or replace a scheduler job for an exchange account."""
    from order_executor.engine.account_job import run_account_tick

    job_id = _job_id(account_id)

    if scheduler.get_job(job_id):
        scheduler.remove_job(job_id)

    scheduler.add_job(
        run_account_tick,
        trigger=_get_trigger(schedule_seconds),
        args=[account_id],
        id=job_id,
        name=f"Account {account_id}",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )
    logger.info(f"Scheduled account {account_id} every {schedule_seconds}s")


def remove_account_job(account_id: int):
    """Remove a scheduler job for an exchange account."""
    job_id = _job_id(account_id)
    if scheduler.get_job(job_id):
        scheduler.remove_job(job_id)
        logger.info(f"Removed job for account {account_id}")


def reschedule_account_job(account_id: int, schedule_seconds: int):
    """Reschedule an existing job with a new interval."""
    job_id = _job_id(account_id)
    if scheduler.get_job(job_id):
        scheduler.reschedule_job(job_id, trigger=_get_trigger(schedule_seconds))
        logger.info(f"Rescheduled account {account_id} to {schedule_seconds}s")
    else:
        add_account_job(account_id, schedule_seconds)


async def refresh_news_job():
    """Pull the economic calendar into the news_event table."""
    from order_executor.services.audit import AuditLog
    from order_executor.services.news_source import (
        NewsSourceError,
        TradingViewNewsSource,
        refresh_news_events,
    )

    async with TradingViewNewsSource() as source:
        try:
            await refresh_news_events(engine, source, settings.news_countries)
        except NewsSourceError as e:
            logger.warning(f"News refresh failed: {e}")
            AuditLog(engine).capture(e, module=__name__, method="refresh_news_job", level="warning")


def add_news_job():
    from datetime import datetime, timezone

    scheduler.add_job(
        refresh_news_job,
        trigger=IntervalTrigger(minutes=settings.news_refresh_minutes),
        id=NEWS_JOB_ID,
        name="Economic calendar refresh",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
        next_run_time=datetime.now(timezone.utc),
    )


def start_scheduler():
    """Start the scheduler and load all enabled accounts."""
    with Session(engine) as session:
        accounts = session.exec(
            select(ExchangeAccount).where(ExchangeAccount.run_on_server == True)  # noqa: E712
        ).all()
        for account in accounts:
            add_account_job(account.id, account.schedule_seconds)

    add_news_job()
    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
