"""Tests for the ccxt and Lighter gateways with the exchange clients mocked out."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from ccxt.base.errors import InsufficientFunds, NetworkError, RateLimitExceeded, RequestTimeout

from order_executor.models.exchange_account import ExchangeAccount
from order_executor.services.encryption import encrypt
from order_executor.services.gateways import (
    CcxtGateway,
    GatewayError,
    LighterGateway,
    OrderRequest,
    Position,
    build_gateway,
)

MARKET = "BTC/USDT:USDT"


def _ccxt_gateway(exchange_name="phemex") -> CcxtGateway:
    gw = CcxtGateway(exchange_name, api_key="k", api_secret="s", initial_delay=0)
    ex = MagicMock()
    ex.market.return_value = {"contractSize": 0.001}
    ex.amount_to_precision.side_effect = lambda symbol, amount: str(round(amount, 3))
    for name in ("fetch_balance", "fetch_ticker", "fetch_positions", "create_order",
                 "fetch_open_orders", "cancel_order", "close", "load_markets"):
        setattr(ex, name, AsyncMock(name=name))
    ex.create_order.return_value = {"id": "o-1", "average": 50001.0, "filled": 5.0, "status": "closed", "info": {"ok": 1}}
    gw.exchange = ex
    gw._markets_loaded = True
    return gw


# ---------------------------------------------------------------------------
# 1. ccxt reads
# ---------------------------------------------------------------------------

class TestCcxtReads:
    @pytest.mark.asyncio
    async def test_margin_is_free_usdt(self):
        gw = _ccxt_gateway()
        gw.exchange.fetch_balance.return_value = {"free": {"USDT": 1234.5}}
        assert await gw.get_available_margin("BTCUSDT") == 1234.5

    @pytest.mark.asyncio
    async def test_balance_failure_raises(self):
        gw = _ccxt_gateway()
        gw.exchange.fetch_balance.side_effect = NetworkError("down")
        with pytest.raises(GatewayError):
            await gw.get_available_margin("BTCUSDT")
        assert gw.exchange.fetch_balance.await_count == gw.max_retries + 1

    @pytest.mark.asyncio
    async def test_kraken_margin_is_free_usd(self):
        gw = _ccxt_gateway("kraken")
        gw.exchange.fetch_balance.return_value = {"free": {"USD": 5000.0}}
        assert await gw.get_available_margin("BTCUSD") == 5000.0

    @pytest.mark.asyncio
    async def test_missing_settlement_currency_raises(self):
        gw = _ccxt_gateway("kraken")
        gw.exchange.fetch_balance.return_value = {"free": {"USDT": 5000.0}}
        with pytest.raises(GatewayError, match="no free USD"):
            await gw.get_available_margin("BTCUSD")

    @pytest.mark.asyncio
    async def test_market_load_failure_is_gateway_error(self):
        gw = _ccxt_gateway()
        gw._markets_loaded = False
        gw.exchange.load_markets.side_effect = NetworkError("dns")
        with pytest.raises(GatewayError, match="dns"):
            await gw.get_ticker("BTCUSD")
        with pytest.raises(GatewayError):
            await gw.get_open_positions("BTCUSD")
        gw.exchange.fetch_ticker.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_kraken_symbol_settles_in_usd(self):
        gw = _ccxt_gateway("kraken")
        gw.exchange.fetch_ticker.return_value = {"last": 50000.0}
        await gw.get_ticker("BTCUSDT")
        gw.exchange.fetch_ticker.assert_awaited_with("BTC/USD:USD")

    @pytest.mark.asyncio
    async def test_ticker_retries_rate_limit(self):
        gw = _ccxt_gateway()
        gw.exchange.fetch_ticker.side_effect = [RateLimitExceeded("slow down"), {"last": 50000.0}]
        assert await gw.get_ticker("BTCUSD") == 50000.0
        gw.exchange.fetch_ticker.assert_awaited_with(MARKET)

    @pytest.mark.asyncio
    async def test_positions_in_base_units(self):
        gw = _ccxt_gateway()
        gw.exchange.fetch_positions.return_value = [
            {"symbol": MARKET, "contracts": 5, "contractSize": 0.001, "side": "long", "entryPrice": 50000},
            {"symbol": MARKET, "contracts": 0, "contractSize": 0.001, "side": "short", "entryPrice": 0},
        ]
        (position,) = await gw.get_open_positions("BTCUSDT")
        assert (position.symbol, position.side, position.entry_price) == ("BTCUSDT", "Long", 50000.0)
        assert position.size == pytest.approx(0.005)


# ---------------------------------------------------------------------------
# 2. ccxt writes
# ---------------------------------------------------------------------------

class TestCcxtOrders:
    @pytest.mark.asyncio
    async def test_market_order_in_contracts(self):
        gw = _ccxt_gateway()
        request = OrderRequest.market("BTCUSDT", "Buy", "Long", 0.005, client_order_id="oe-1")

        result = await gw.place_order(request)

        assert result.success
        assert result.order_id == "o-1"
        assert result.filled_price == 50001.0
        assert result.raw_response == '{"ok": 1}'
        gw.exchange.create_order.assert_awaited_once_with(
            MARKET, "market", "buy", 5.0, None, {"clientOrderId": "oe-1"}
        )

    @pytest.mark.asyncio
    async def test_reduce_only_close(self):
        gw = _ccxt_gateway()
        close = OrderRequest.reduce_only_close(Position("BTCUSDT", "Long", 0.005, 50000.0))

        await gw.place_order(close)

        args = gw.exchange.create_order.await_args.args
        assert args[2] == "sell"
        assert args[5] == {"reduceOnly": True}

    @pytest.mark.asyncio
    async def test_rejection_reported_not_raised(self):
        gw = _ccxt_gateway()
        gw.exchange.create_order.side_effect = InsufficientFunds("no margin")
        result = await gw.place_order(OrderRequest.market("BTCUSDT", "Buy", "Long", 0.005))
        assert not result.success
        assert "no margin" in result.error

    @pytest.mark.asyncio
    async def test_submit_timeout_not_resent(self):
        gw = _ccxt_gateway()
        gw.exchange.create_order.side_effect = RequestTimeout("timed out")
        result = await gw.place_order(OrderRequest.market("BTCUSDT", "Buy", "Long", 0.005))
        assert not result.success
        assert gw.exchange.create_order.await_count == 1

    @pytest.mark.asyncio
    async def test_rounds_to_zero(self):
        gw = _ccxt_gateway()
        result = await gw.place_order(OrderRequest.market("BTCUSDT", "Buy", "Long", 0.0000001))
        assert not result.success
        gw.exchange.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_loss_replaces_previous(self):
        gw = _ccxt_gateway()
        gw.exchange.fetch_positions.return_value = [
            {"symbol": MARKET, "contracts": 5, "contractSize": 0.001, "side": "long", "entryPrice": 50000},
        ]
        gw.exchange.fetch_open_orders.return_value = [
            {"id": "old-stop", "stopPrice": 49000, "reduceOnly": True},
            {"id": "limit", "price": 48000, "reduceOnly": False},
        ]

        result = await gw.set_stop_loss("BTCUSDT", "Long", 49500.0)

        assert result.success
        gw.exchange.cancel_order.assert_awaited_once_with("old-stop", MARKET, {})
        args = gw.exchange.create_order.await_args.args
        assert args[:5] == (MARKET, "market", "sell", 5.0, None)
        assert args[5] == {"stopLossPrice": 49500.0, "reduceOnly": True, "triggerType": "ByMarkPrice"}

    @pytest.mark.asyncio
    async def test_stop_loss_without_position(self):
        gw = _ccxt_gateway()
        gw.exchange.fetch_positions.return_value = []
        result = await gw.set_stop_loss("BTCUSDT", "Short", 51000.0)
        assert not result.success
        gw.exchange.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_all_flattens_every_position(self):
        gw = _ccxt_gateway()
        gw.exchange.fetch_positions.return_value = [
            {"symbol": MARKET, "contracts": 5, "contractSize": 0.001, "side": "long", "entryPrice": 50000},
            {"symbol": MARKET, "contracts": 2, "contractSize": 0.001, "side": "short", "entryPrice": 51000},
        ]

        results = await gw.close_all("BTCUSDT")

        assert len(results) == 2
        sides = [c.args[2] for c in gw.exchange.create_order.await_args_list]
        assert sides == ["sell", "buy"]

    @pytest.mark.asyncio
    async def test_close_all_raises_on_rejection(self):
        gw = _ccxt_gateway()
        gw.exchange.fetch_positions.return_value = [
            {"symbol": MARKET, "contracts": 5, "contractSize": 0.001, "side": "long", "entryPrice": 50000},
        ]
        gw.exchange.create_order.side_effect = InsufficientFunds("nope")
        with pytest.raises(GatewayError):
            await gw.close_all("BTCUSDT")


def test_unsupported_ccxt_exchange():
    with pytest.raises(ValueError):
        CcxtGateway("binance", api_key="k", api_secret="s")


# ---------------------------------------------------------------------------
# 3. Lighter
# ---------------------------------------------------------------------------

def _lighter_gateway() -> LighterGateway:
    gw = LighterGateway(host="https://mock", private_key="0xdead", api_key_index=3, account_index=9)
    gw._api_client = MagicMock()
    gw._signer_client = MagicMock()
    gw._signer_client.create_market_order = AsyncMock()
    gw._market_ids = {"BTC": 1}
    gw._market_meta = {1: {"price_decimals": 1, "size_decimals": 4}}
    return gw


class TestLighter:
    @pytest.mark.asyncio
    async def test_market_order_encoding(self):
        gw = _lighter_gateway()
        gw._signer_client.create_market_order.return_value = (SimpleNamespace(status="filled"), "tx", None)
        request = OrderRequest(symbol="BTCUSDT", side="Buy", pos_side="Long", quantity=0.005, price=50000.0)

        result = await gw.place_order(request)

        assert result.success
        kwargs = gw._signer_client.create_market_order.await_args.kwargs
        assert kwargs["market_index"] == 1
        assert kwargs["base_amount"] == 50
        assert kwargs["avg_execution_price"] == 525000  # 5% worst-price slippage
        assert kwargs["is_ask"] is False
        assert kwargs["reduce_only"] is False

    @pytest.mark.asyncio
    async def test_rejection(self):
        gw = _lighter_gateway()
        gw._signer_client.create_market_order.return_value = (None, None, "invalid nonce")
        request = OrderRequest(symbol="BTCUSDT", side="Sell", pos_side="Short", quantity=0.005, price=50000.0)

        result = await gw.place_order(request)

        assert not result.success
        assert result.error == "invalid nonce"

    @pytest.mark.asyncio
    async def test_positions_from_account(self):
        gw = _lighter_gateway()
        gw._account = AsyncMock(return_value=SimpleNamespace(positions=[
            SimpleNamespace(market_id=1, position="0.01", sign=-1, avg_entry_price="50500"),
            SimpleNamespace(market_id=2, position="3", sign=1, avg_entry_price="2000"),
            SimpleNamespace(market_id=1, position="0", sign=1, avg_entry_price="0"),
        ]))

        positions = await gw.get_open_positions("BTCUSDT")

        assert positions == [Position(symbol="BTCUSDT", side="Short", size=0.01, entry_price=50500.0)]

    @pytest.mark.asyncio
    async def test_margin_failure_raises(self):
        gw = _lighter_gateway()
        gw._account = AsyncMock(side_effect=RuntimeError("connection reset"))
        with pytest.raises(GatewayError):
            await gw.get_available_margin("BTCUSDT")


# ---------------------------------------------------------------------------
# 4. factory
# ---------------------------------------------------------------------------

class TestBuildGateway:
    def test_ccxt_account(self):
        account = ExchangeAccount(
            id=1, name="a", user_id=1, exchange="kraken",
            api_key_encrypted=encrypt("key"), api_secret_encrypted=encrypt("secret"), testnet=True,
        )
        gw = build_gateway(account)
        assert isinstance(gw, CcxtGateway)
        assert gw.exchange_id == "krakenfutures"
        assert (gw.api_key, gw.api_secret, gw.testnet) == ("key", "secret", True)

    def test_lighter_account(self):
        account = ExchangeAccount(
            id=2, name="l", user_id=1, exchange="lighter",
            api_secret_encrypted=encrypt("0xabc"), lighter_api_key_index=3, lighter_account_index=11,
        )
        gw = build_gateway(account)
        assert isinstance(gw, LighterGateway)
        assert (gw.private_key, gw.api_key_index, gw.account_index) == ("0xabc", 3, 11)

    def test_missing_credentials(self):
        with pytest.raises(ValueError):
            build_gateway(ExchangeAccount(id=3, name="p", user_id=1, exchange="phemex"))

    def test_unknown_exchange(self):
        with pytest.raises(ValueError):
            build_gateway(ExchangeAccount(id=4, name="b", user_id=1, exchange="binance"))
