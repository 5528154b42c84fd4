"""ccxt-backed gateway for the centralised derivatives venues (Phemex, Kraken, KuCoin).

Wraps ccxt.async_support with bounded exponential-backoff retries on transient
errors. Quantities cross this boundary in base-asset units; the adapter converts
to exchange contracts using the market's contract size.
"""

import asyncio
import json
import logging
from typing import Any, Callable

import ccxt.async_support as ccxt
from ccxt.base.errors import (
    BadRequest,
    BaseError,
    ExchangeNotAvailable,
    NetworkError,
    RateLimitExceeded,
    RequestTimeout,
)

from order_executor.services.gateways.base import (
    ExchangeGateway,
    GatewayError,
    OrderRequest,
    OrderResult,
    Position,
    exit_side,
)
from order_executor.utils.trading import base_asset, first_letter_upper

logger = logging.getLogger(__name__)

# account exchange name -> ccxt exchange id
CCXT_EXCHANGE_IDS: dict[str, str] = {
    "phemex": "phemex",
    "kraken": "krakenfutures",
    "kucoin": "kucoinfutures",
}

# ccxt exchange id -> (stop trigger param name, {trigger type -> exchange value})
STOP_TRIGGER_PARAMS: dict[str, tuple[str, dict[str, str]]] = {
    "phemex": ("triggerType", {"mark": "ByMarkPrice", "last": "ByLastPrice"}),
    "krakenfutures": ("triggerSignal", {"mark": "mark", "last": "last", "index": "index"}),
    "kucoinfutures": ("stopPriceType", {"mark": "MP", "last": "TP", "index": "IP"}),
}

# ccxt exchange id -> settlement currency of the linear perpetuals we trade
SETTLE_CURRENCIES: dict[str, str] = {
    "phemex": "USDT",
    "krakenfutures": "USD",
    "kucoinfutures": "USDT",
}


class CcxtGateway(ExchangeGateway):
    """Exchange gateway over a ccxt unified futures/swap client."""

    def __init__(
        self,
        exchange_name: str,
        api_key: str,
        api_secret: str,
        password: str | None = None,
        testnet: bool = False,
        max_retries: int = 3,
        initial_delay: float = 1.0,
    ):
        if exchange_name not in CCXT_EXCHANGE_IDS:
            raise ValueError(f"Unsupported ccxt exchange: {exchange_name}")
        self.name = exchange_name
        self.exchange_id = CCXT_EXCHANGE_IDS[exchange_name]
        self.settle = SETTLE_CURRENCIES[self.exchange_id]
        self.api_key = api_key
        self.api_secret = api_secret
        self.password = password
        self.testnet = testnet
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.exchange: Any = None
        self._markets_loaded = False

    async def _ensure_exchange(self):
        """Lazily build the ccxt client and load markets."""
        if self.exchange is None:
            exchange_class = getattr(ccxt, self.exchange_id)
            config = {
                "apiKey": self.api_key,
                "secret": self.api_secret,
                "enableRateLimit": True,
                "options": {"defaultType": "swap"},
            }
            if self.password:
                config["password"] = self.password
            self.exchange = exchange_class(config)
            if self.testnet:
                self.exchange.set_sandbox_mode(True)
            logger.info(f"ccxt client initialized for {self.exchange_id} (testnet={self.testnet})")

        if not self._markets_loaded:
            await self._retry_request(self.exchange.load_markets)
            self._markets_loaded = True

    async def _retry_request(
        self,
        func: Callable,
        *args,
        retry_network: bool = True,
        **kwargs,
    ) -> Any:
        """Call ``func`` retrying rate limits (and network errors when safe) with backoff.

        Order submission passes ``retry_network=False``: a timed-out submit may
        have reached the exchange and must not be sent twice.
        """
        delay = self.initial_delay
        for attempt in range(self.max_retries + 1):
            try:
                return await func(*args, **kwargs)
            except RateLimitExceeded as e:
                last = e
            except (NetworkError, RequestTimeout, ExchangeNotAvailable) as e:
                if not retry_network:
                    raise
                last = e
            except BadRequest:
                raise

            if attempt == self.max_retries:
                break
            wait = delay * (2 ** attempt)
            logger.warning(
                f"{self.exchange_id} {getattr(func, '__name__', 'request')} failed "
                f"(attempt {attempt + 1}/{self.max_retries + 1}): {last}; retrying in {wait:.1f}s"
            )
            await asyncio.sleep(wait)

        raise last

    def _market_symbol(self, symbol: str) -> str:
        base = base_asset(symbol)
        return f"{base}/{self.settle}:{self.settle}"

    def _contract_size(self, market_symbol: str) -> float:
        market = self.exchange.market(market_symbol)
        return float(market.get("contractSize") or 1)

    def _to_amount(self, market_symbol: str, quantity: float) -> float:
        contracts = quantity / self._contract_size(market_symbol)
        return float(self.exchange.amount_to_precision(market_symbol, contracts))

    async def get_available_margin(self, symbol: str) -> float:
        try:
            await self._ensure_exchange()
            balance = await self._retry_request(self.exchange.fetch_balance)
        except BaseError as e:
            raise GatewayError(f"{self.name} balance fetch failed: {e}") from e
        free = balance.get("free") or {}
        if free.get(self.settle) is None:
            raise GatewayError(
                f"{self.name} balance has no free {self.settle} (currencies: {sorted(free) or 'none'})"
            )
        return float(free[self.settle])

    async def get_ticker(self, symbol: str) -> float:
        market_symbol = self._market_symbol(symbol)
        try:
            await self._ensure_exchange()
            ticker = await self._retry_request(self.exchange.fetch_ticker, market_symbol)
        except BaseError as e:
            raise GatewayError(f"{self.name} ticker fetch failed for {market_symbol}: {e}") from e
        last = ticker.get("last")
        if last is None:
            raise GatewayError(f"{self.name} ticker for {market_symbol} has no last price")
        return float(last)

    async def get_open_positions(self, symbol: str | None = None) -> list[Position]:
        symbols = [self._market_symbol(symbol)] if symbol else None
        try:
            await self._ensure_exchange()
            raw = await self._retry_request(self.exchange.fetch_positions, symbols)
        except BaseError as e:
            raise GatewayError(f"{self.name} positions fetch failed: {e}") from e

        positions = []
        for pos in raw:
            contracts = float(pos.get("contracts") or 0)
            if abs(contracts) < 1e-12:
                continue
            market_symbol = pos.get("symbol")
            if symbols and market_symbol not in symbols:
                continue
            contract_size = float(pos.get("contractSize") or self._contract_size(market_symbol))
            positions.append(Position(
                symbol=symbol or market_symbol,
                side=first_letter_upper(pos.get("side") or ""),
                size=abs(contracts) * contract_size,
                entry_price=float(pos.get("entryPrice") or 0),
            ))
        return positions

    async def place_order(self, request: OrderRequest) -> OrderResult:
        market_symbol = self._market_symbol(request.symbol)
        try:
            await self._ensure_exchange()
            amount = self._to_amount(market_symbol, request.quantity)
            if amount <= 0:
                return OrderResult(success=False, error=f"Quantity {request.quantity} rounds to zero contracts")

            params: dict[str, Any] = {}
            if request.reduce_only:
                params["reduceOnly"] = True
            if request.client_order_id:
                params["clientOrderId"] = request.client_order_id

            order = await self._retry_request(
                self.exchange.create_order,
                market_symbol,
                request.order_type.lower(),
                request.side.lower(),
                amount,
                request.price,
                params,
                retry_network=False,
            )
        except BaseError as e:
            logger.error(f"{self.name} order rejected: {e}")
            return OrderResult(success=False, error=str(e))

        logger.info(
            f"{self.name} order placed: {order.get('id')} {request.side} {amount} {market_symbol}"
            f"{' reduce-only' if request.reduce_only else ''}"
        )
        return _order_result(order)

    async def set_stop_loss(
        self,
        symbol: str,
        pos_side: str,
        stop_price: float,
        trigger_type: str = "mark",
        reduce_only: bool = True,
    ) -> OrderResult:
        market_symbol = self._market_symbol(symbol)

        positions = [p for p in await self.get_open_positions(symbol) if p.side == pos_side]
        if not positions:
            return OrderResult(success=False, error=f"No open {pos_side} position on {market_symbol}")
        position = positions[0]

        try:
            await self._cancel_stop_orders(market_symbol)

            params: dict[str, Any] = {"stopLossPrice": stop_price, "reduceOnly": reduce_only}
            trigger = STOP_TRIGGER_PARAMS.get(self.exchange_id)
            if trigger and trigger_type in trigger[1]:
                params[trigger[0]] = trigger[1][trigger_type]

            order = await self._retry_request(
                self.exchange.create_order,
                market_symbol,
                "market",
                exit_side(pos_side).lower(),
                self._to_amount(market_symbol, position.size),
                None,
                params,
                retry_network=False,
            )
        except BaseError as e:
            logger.error(f"{self.name} stop-loss rejected for {market_symbol}: {e}")
            return OrderResult(success=False, error=str(e))

        logger.info(f"{self.name} stop-loss set at {stop_price} for {pos_side} {market_symbol}")
        return _order_result(order)

    async def _cancel_stop_orders(self, market_symbol: str):
        """Cancel resting reduce-only trigger orders so a new stop replaces the old one."""
        params = {"stop": True} if self.exchange_id == "kucoinfutures" else {}
        orders = await self._retry_request(self.exchange.fetch_open_orders, market_symbol, None, None, params)
        for o in orders:
            is_trigger = o.get("stopPrice") or o.get("triggerPrice") or o.get("stopLossPrice")
            if is_trigger and o.get("reduceOnly"):
                await self._retry_request(self.exchange.cancel_order, o["id"], market_symbol, params)
                logger.info(f"{self.name} cancelled previous stop {o['id']} on {market_symbol}")

    async def close(self):
        if self.exchange is not None:
            try:
                await self.exchange.close()
            except BaseError as e:
                logger.warning(f"{self.name} client close failed: {e}")
        self.exchange = None
        self._markets_loaded = False


def _order_result(order: dict) -> OrderResult:
    filled_price = order.get("average") or order.get("price")
    filled_amount = order.get("filled")
    return OrderResult(
        success=True,
        order_id=str(order.get("id")) if order.get("id") is not None else None,
        filled_price=float(filled_price) if filled_price is not None else None,
        filled_amount=float(filled_amount) if filled_amount is not None else None,
        order_status=order.get("status"),
        raw_response=json.dumps(order.get("info", order), default=str),
    )
