"""Per-account execution tick.

This is the function APScheduler calls on each interval. It loads the account,
builds the exchange gateway and runs one ``OrderController`` tick with a hard
timeout, then records the outcome in ``job_log``.
"""

import asyncio
import logging

from sqlmodel import Session

from order_executor.config import settings
from order_executor.database import engine
from order_executor.engine.order_controller import (
    ControllerConfig,
    ControllerState,
    OrderController,
    TickResult,
)
from order_executor.models.exchange_account import ExchangeAccount
from order_executor.models.job_log import JobLog
from order_executor.services.audit import AuditLog
from order_executor.services.gateways import build_gateway
from order_executor.services.market_data import HyperliquidCandleSource
from order_executor.services.news_source import StoredNewsSource
from order_executor.services.order_store import SqlOrderStore

logger = logging.getLogger(__name__)
_account_locks: dict[int, asyncio.Lock] = {}
_account_locks_guard = asyncio.Lock()

# actions worth a Telegram message
_NOTIFY_ACTIONS = {"filled", "stop_placed", "stop_moved", "no_trade", "stop_missing"}


def _notify(message: str):
    """Send a Telegram notification (fire-and-forget)."""
    try:
        from order_executor.services.telegram_bot import get_bot
        bot = get_bot()
        if bot and bot._loop:
            asyncio.run_coroutine_threadsafe(bot.send_notification(message), bot._loop)
    except Exception as e:
        logger.debug(f"Telegram notification dropped: {e}")


async def run_account_tick(account_id: int, force: bool = False) -> TickResult | None:
    """Run one tick per account, skipping if a prior tick is still in-flight."""
    lock = await _get_account_lock(account_id)
    if lock.locked():
        logger.warning(f"[account_{account_id}] Skipping overlapping tick")
        _log_cycle(
            account_id,
            "skipped",
            action="tick_skipped_overlap",
            message="Skipped tick because previous run is still in progress",
        )
        return None

    async with lock:
        return await _run_account_tick_once(account_id, force=force)


async def _get_account_lock(account_id: int) -> asyncio.Lock:
    async with _account_locks_guard:
        lock = _account_locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            _account_locks[account_id] = lock
        return lock


def build_controller(account: ExchangeAccount, gateway) -> OrderController:
    """Wire the production collaborators for one account."""
    return OrderController(
        config=ControllerConfig.from_account(account, settings),
        gateway=gateway,
        store=SqlOrderStore(engine),
        news_source=StoredNewsSource(engine),
        candle_source=HyperliquidCandleSource(base_url=settings.hyperliquid_url),
        audit=AuditLog(engine),
    )


async def _run_account_tick_once(account_id: int, force: bool = False) -> TickResult | None:
    """Execute one tick for an account.

    Disabled accounts are skipped unless ``force`` is set (manual trigger).
    """
    with Session(engine) as session:
        account = session.get(ExchangeAccount, account_id)
        if not account or (not account.run_on_server and not force):
            return None
        tag = f"[{account.name}]"

    logger.info(f"{tag} Starting tick")
    try:
        gateway = build_gateway(account)
    except ValueError as e:
        logger.error(f"{tag} Cannot build gateway: {e}")
        AuditLog(engine).capture(e, module=__name__, method="build_gateway", context={"account_id": account_id})
        _log_cycle(account_id, "error", action="gateway_unavailable", message=str(e))
        return None

    controller = build_controller(account, gateway)
    try:
        result = await asyncio.wait_for(controller.run_tick(), timeout=settings.tick_timeout_seconds)
    except asyncio.TimeoutError:
        message = f"Tick exceeded {settings.tick_timeout_seconds}s in state {controller.state.value}"
        logger.error(f"{tag} {message}")
        controller.audit.capture(message, module=__name__, method="run_account_tick",
                                 context={"account_id": account_id, "state": controller.state.value})
        _notify(f"{tag} TIMEOUT: {message}")
        _log_cycle(account_id, "error", action="tick_timeout", message=message)
        return TickResult(state=ControllerState.ERROR, status="error", action="tick_timeout", message=message)
    except Exception as e:
        logger.error(f"{tag} Tick error: {e}", exc_info=True)
        controller.audit.capture(e, module=__name__, method="run_account_tick", context={"account_id": account_id})
        _notify(f"{tag} ERROR: {e}")
        _log_cycle(account_id, "error", message=str(e))
        return None
    finally:
        await gateway.close()

    logger.info(f"{tag} Tick done: {result.status} {result.action} {result.message or ''}")
    if result.status == "error" or result.action in _NOTIFY_ACTIONS:
        _notify(f"{tag} {result.action}: {result.message}")
    _log_cycle(
        account_id,
        result.status,
        action=result.action,
        message=result.message,
        session=result.session,
        order_id=result.order_id,
        details={"state": result.state.value, **result.details},
    )
    return result


def _log_cycle(
    account_id: int,
    status: str,
    action: str | None = None,
    message: str | None = None,
    session: str | None = None,
    order_id: int | None = None,
    details: dict | None = None,
):
    """Write a JobLog entry."""
    with Session(engine) as db:
        db.add(JobLog(
            account_id=account_id,
            status=status,
            action=action,
            session=session,
            order_id=order_id,
            message=message,
            details=details,
        ))
        db.commit()
