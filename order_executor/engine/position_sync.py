"""Order reconciliation on startup.

A crash mid-tick can leave orders in ``pending``. Before the scheduler starts,
each pending order is compared with the exchange:

1. Pending entry, matching position open   -> filled at the position entry price
2. Pending entry, no matching position     -> error ("stale pending after restart")
3. Pending exit, position gone             -> filled
4. Pending exit, position still open       -> error

Accounts whose exchange cannot be reached keep their pending orders; the next
startup tries again.
"""

import logging
from collections import defaultdict

from sqlmodel import Session

from order_executor.database import engine
from order_executor.models.exchange_account import ExchangeAccount
from order_executor.models.order import (
    ORDER_DIR_ENTRY,
    ORDER_STATUS_ERROR,
    ORDER_STATUS_FILLED,
    ORDER_STATUS_PENDING,
    Order,
)
from order_executor.services.audit import AuditLog
from order_executor.services.gateways import GatewayError, build_gateway
from order_executor.services.order_store import SqlOrderStore

logger = logging.getLogger(__name__)

STALE_REASON = "stale pending after restart"


async def reconcile_orders_on_startup(store: SqlOrderStore | None = None, gateway_factory=build_gateway) -> dict:
    """Resolve every pending order. Returns counts for logging and the API."""
    store = store or SqlOrderStore(engine)
    audit = AuditLog(store.engine)
    summary = {"filled": 0, "error": 0, "unresolved": 0}

    pending = store.list_orders_by_status(ORDER_STATUS_PENDING)
    if not pending:
        logger.info("Order reconciliation: no pending orders")
        return summary

    by_account: dict[int, list[Order]] = defaultdict(list)
    for order in pending:
        by_account[order.exchange_id].append(order)

    for account_id, orders in by_account.items():
        with Session(store.engine) as session:
            account = session.get(ExchangeAccount, account_id)

        if account is None:
            for order in orders:
                store.update_status(order.id, ORDER_STATUS_ERROR, f"{STALE_REASON}: account {account_id} missing")
                summary["error"] += 1
            continue

        try:
            gateway = gateway_factory(account)
        except ValueError as e:
            logger.error(f"Order reconciliation: account {account_id} has no usable gateway: {e}")
            summary["unresolved"] += len(orders)
            continue

        try:
            for order in orders:
                try:
                    positions = await gateway.get_open_positions(order.symbol)
                except GatewayError as e:
                    logger.error(f"Order reconciliation: positions for {order.symbol} unavailable: {e}")
                    audit.capture(e, module=__name__, method="reconcile_orders_on_startup",
                                  context={"order_id": order.id, "account_id": account_id})
                    summary["unresolved"] += 1
                    continue

                match = next((p for p in positions if p.side == order.pos_side and p.size > 0), None)
                if order.order_dir == ORDER_DIR_ENTRY:
                    if match is not None:
                        store.update_status(
                            order.id, ORDER_STATUS_FILLED, "position found after restart",
                            fill_price=match.entry_price,
                        )
                        summary["filled"] += 1
                    else:
                        store.update_status(order.id, ORDER_STATUS_ERROR, STALE_REASON)
                        summary["error"] += 1
                else:
                    if match is None:
                        store.update_status(order.id, ORDER_STATUS_FILLED, "position closed before restart")
                        summary["filled"] += 1
                    else:
                        store.update_status(order.id, ORDER_STATUS_ERROR, f"{STALE_REASON}: position still open")
                        summary["error"] += 1
        finally:
            await gateway.close()

    logger.info(
        f"Order reconciliation: {summary['filled']} filled, {summary['error']} error, "
        f"{summary['unresolved']} unresolved"
    )
    return summary
