"""Emergency stop: flatten every account and optionally disable all accounts."""

import logging
from datetime import datetime, timezone

from sqlmodel import Session, select

from order_executor.database import engine
from order_executor.models.exchange_account import ExchangeAccount
from order_executor.services.gateways import GatewayError, build_gateway
from order_executor.utils.trading import normalize_to_usdt

logger = logging.getLogger(__name__)


async def run_emergency_stop(
    close_positions: bool = True,
    disable_accounts: bool = True,
    gateway_factory=build_gateway,
) -> dict:
    """Execute emergency stop across all accounts.

    Returns dict with positions_closed, errors, accounts_disabled counts.
    """
    result = {"positions_closed": 0, "errors": [], "accounts_disabled": 0}

    if close_positions:
        with Session(engine) as session:
            accounts = session.exec(select(ExchangeAccount)).all()

        for account in accounts:
            try:
                result["positions_closed"] += await _close_account(account, gateway_factory)
            except (GatewayError, ValueError) as e:
                error_msg = f"Failed to flatten account {account.id} ({account.name}): {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)

    if disable_accounts:
        from order_executor.engine.scheduler import remove_account_job

        with Session(engine) as session:
            accounts = session.exec(
                select(ExchangeAccount).where(ExchangeAccount.run_on_server == True)  # noqa: E712
            ).all()

            for account in accounts:
                account.run_on_server = False
                account.updated_at = datetime.now(timezone.utc)
                session.add(account)
                remove_account_job(account.id)
                result["accounts_disabled"] += 1

            session.commit()

    return result


async def _close_account(account: ExchangeAccount, gateway_factory) -> int:
    """Close every open position on the account's symbol. Returns positions closed."""
    gateway = gateway_factory(account)
    symbol = normalize_to_usdt(account.symbol)
    try:
        results = await gateway.close_all(symbol)
    finally:
        await gateway.close()

    if results:
        logger.info(f"[emergency_stop] Closed {len(results)} position(s) on {account.name} {symbol}")
    return len(results)
