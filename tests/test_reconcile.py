"""Tests for startup reconciliation of orders left pending."""

from unittest.mock import AsyncMock

import pytest

from order_executor.engine.position_sync import STALE_REASON, reconcile_orders_on_startup
from order_executor.models.order import (
    ORDER_DIR_ENTRY,
    ORDER_DIR_EXIT,
    ORDER_STATUS_ERROR,
    ORDER_STATUS_FILLED,
    ORDER_STATUS_PENDING,
    Order,
)
from order_executor.services.gateways.base import ExchangeGateway, GatewayError, Position
from order_executor.services.order_store import SqlOrderStore

LONG_POS = Position(symbol="BTCUSDT", side="Long", size=0.005, entry_price=50010.0)


def _pending(store, account, external_id, pos_side="Long", order_dir=ORDER_DIR_ENTRY) -> Order:
    return store.create_order(Order(
        user_id=account.user_id, exchange_id=account.id, external_id=external_id,
        symbol="BTCUSDT", side="Buy" if pos_side == "Long" else "Sell", pos_side=pos_side,
        quantity=0.005, order_dir=order_dir,
    ))


@pytest.mark.asyncio
async def test_pending_resolved_against_exchange(engine, account):
    store = SqlOrderStore(engine)
    matched = _pending(store, account, "1")
    stale = _pending(store, account, "2", pos_side="Short")
    closed_exit = _pending(store, account, "3:close:short", pos_side="Short", order_dir=ORDER_DIR_EXIT)
    open_exit = _pending(store, account, "4:close:long", order_dir=ORDER_DIR_EXIT)

    gateway = AsyncMock(spec=ExchangeGateway)
    gateway.get_open_positions.return_value = [LONG_POS]

    summary = await reconcile_orders_on_startup(store, gateway_factory=lambda acc: gateway)

    assert summary == {"filled": 2, "error": 2, "unresolved": 0}
    assert store.find_order_by_id(matched.id).status == ORDER_STATUS_FILLED
    assert store.find_order_by_id(matched.id).fill_price == 50010.0
    assert store.find_order_by_id(stale.id).status == ORDER_STATUS_ERROR
    assert store.find_order_by_id(stale.id).reason == STALE_REASON
    assert store.find_order_by_id(closed_exit.id).status == ORDER_STATUS_FILLED
    assert store.find_order_by_id(open_exit.id).status == ORDER_STATUS_ERROR
    gateway.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_unreachable_exchange_leaves_pending(engine, account):
    store = SqlOrderStore(engine)
    order = _pending(store, account, "1")
    gateway = AsyncMock(spec=ExchangeGateway)
    gateway.get_open_positions.side_effect = GatewayError("down")

    summary = await reconcile_orders_on_startup(store, gateway_factory=lambda acc: gateway)

    assert summary["unresolved"] == 1
    assert store.find_order_by_id(order.id).status == ORDER_STATUS_PENDING


@pytest.mark.asyncio
async def test_nothing_pending(engine):
    factory = AsyncMock()
    summary = await reconcile_orders_on_startup(SqlOrderStore(engine), gateway_factory=factory)
    assert summary == {"filled": 0, "error": 0, "unresolved": 0}
    factory.assert_not_called()
