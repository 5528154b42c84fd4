"""Lighter DEX gateway.

Wraps the lighter-sdk async API. Lighter prices and sizes are integers scaled by
per-market decimals, so every order goes through the market metadata cache.
"""

import logging
import time

from order_executor.services.gateways.base import (
    POS_LONG,
    POS_SHORT,
    SIDE_SELL,
    ExchangeGateway,
    GatewayError,
    OrderRequest,
    OrderResult,
    Position,
    exit_side,
)
from order_executor.utils.trading import base_asset

logger = logging.getLogger(__name__)

# worst acceptable price distance for market and stop orders
MARKET_SLIPPAGE = 0.05


class LighterGateway(ExchangeGateway):
    """Exchange gateway over the Lighter SDK signer and REST clients."""

    name = "lighter"

    def __init__(
        self,
        host: str,
        private_key: str,
        api_key_index: int,
        account_index: int,
    ):
        self.host = host
        self.private_key = private_key
        self.api_key_index = api_key_index
        self.account_index = account_index
        self._api_client = None
        self._signer_client = None
        self._market_ids: dict[str, int] = {}  # base asset -> market index
        self._market_meta: dict[int, dict] = {}  # market index -> {price_decimals, size_decimals}

    async def _ensure_clients(self):
        """Lazily initialize Lighter SDK clients."""
        if self._api_client is not None:
            return

        import lighter

        config = lighter.Configuration(host=self.host)
        self._api_client = lighter.ApiClient(configuration=config)
        self._signer_client = lighter.SignerClient(
            url=self.host,
            account_index=self.account_index,
            api_private_keys={self.api_key_index: self.private_key},
        )
        logger.info("Lighter SDK clients initialized")

    async def _market_index(self, symbol: str) -> int:
        """Resolve BTCUSDT -> Lighter market index via the order book listing."""
        base = base_asset(symbol)
        if base in self._market_ids:
            return self._market_ids[base]

        import lighter

        resp = await lighter.OrderApi(self._api_client).order_books()
        for book in getattr(resp, "order_books", None) or []:
            self._market_ids[str(book.symbol).upper()] = int(book.market_id)
        if base not in self._market_ids:
            raise GatewayError(f"Lighter has no market for {symbol}")
        return self._market_ids[base]

    async def _book_details(self, market_index: int):
        import lighter

        resp = await lighter.OrderApi(self._api_client).order_book_details(market_id=market_index)
        for book in (resp.order_book_details or []) + (getattr(resp, "spot_order_book_details", None) or []):
            if book.market_id == market_index:
                self._market_meta[market_index] = {
                    "price_decimals": int(book.supported_price_decimals),
                    "size_decimals": int(book.supported_size_decimals),
                }
                return book
        raise GatewayError(f"Could not find market details for market_index={market_index}")

    async def _get_market_meta(self, market_index: int) -> dict:
        if market_index not in self._market_meta:
            await self._book_details(market_index)
        return self._market_meta[market_index]

    async def _account(self):
        import lighter

        resp = await lighter.AccountApi(self._api_client).account(
            by="index", value=str(self.account_index)
        )
        if hasattr(resp, "accounts") and resp.accounts:
            return resp.accounts[0]
        return resp

    async def get_available_margin(self, symbol: str) -> float:
        await self._ensure_clients()
        try:
            account = await self._account()
        except Exception as e:
            raise GatewayError(f"Lighter balance fetch failed: {e}") from e
        balance = getattr(account, "available_balance", None)
        if balance is None:
            raise GatewayError(f"Lighter balance fetch: unexpected response structure: {account}")
        return float(balance)

    async def get_ticker(self, symbol: str) -> float:
        await self._ensure_clients()
        try:
            market_index = await self._market_index(symbol)
            book = await self._book_details(market_index)
        except GatewayError:
            raise
        except Exception as e:
            raise GatewayError(f"Lighter ticker fetch failed for {symbol}: {e}") from e
        return float(getattr(book, "last_trade_price", 0) or 0)

    async def get_open_positions(self, symbol: str | None = None) -> list[Position]:
        await self._ensure_clients()
        try:
            wanted = await self._market_index(symbol) if symbol else None
            account = await self._account()
        except GatewayError:
            raise
        except Exception as e:
            raise GatewayError(f"Lighter positions fetch failed: {e}") from e

        positions = []
        for pos in getattr(account, "positions", None) or []:
            market_index = int(getattr(pos, "market_id", getattr(pos, "market_index", -1)))
            if wanted is not None and market_index != wanted:
                continue
            size = float(getattr(pos, "position", None) or getattr(pos, "size", 0) or 0)
            if abs(size) < 1e-10:
                continue
            sign = getattr(pos, "sign", None)
            if sign is None:
                sign = 1 if size > 0 else -1
            positions.append(Position(
                symbol=symbol or str(getattr(pos, "symbol", market_index)),
                side=POS_LONG if int(sign) > 0 else POS_SHORT,
                size=abs(size),
                entry_price=float(getattr(pos, "avg_entry_price", None) or getattr(pos, "entry_price", 0) or 0),
            ))
        return positions

    def _encode(self, meta: dict, price: float, amount: float) -> tuple[int, int]:
        price_int = int(round(price * 10 ** meta["price_decimals"]))
        amount_int = int(round(amount * 10 ** meta["size_decimals"]))
        return price_int, amount_int

    async def place_order(self, request: OrderRequest) -> OrderResult:
        await self._ensure_clients()
        client_order_index = int(time.time() * 1000) % (2**31)
        is_ask = request.side == SIDE_SELL

        try:
            market_index = await self._market_index(request.symbol)
            meta = await self._get_market_meta(market_index)
            ref_price = request.price or await self.get_ticker(request.symbol)
            worst = ref_price * (1 - MARKET_SLIPPAGE) if is_ask else ref_price * (1 + MARKET_SLIPPAGE)
            price_int, amount_int = self._encode(meta, worst, request.quantity)
            if amount_int <= 0:
                return OrderResult(success=False, error=f"Quantity {request.quantity} rounds to zero")
            logger.debug(
                f"Order encode: price={worst} -> {price_int} ({meta['price_decimals']}dp), "
                f"amount={request.quantity} -> {amount_int} ({meta['size_decimals']}dp)"
            )

            order, resp, error = await self._signer_client.create_market_order(
                market_index=market_index,
                client_order_index=client_order_index,
                base_amount=amount_int,
                avg_execution_price=price_int,
                is_ask=is_ask,
                reduce_only=request.reduce_only,
            )
        except GatewayError as e:
            return OrderResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"Lighter order failed: {e}")
            return OrderResult(success=False, error=str(e))

        if error is not None:
            logger.error(f"Lighter order rejected: {error}")
            return OrderResult(success=False, error=str(error), raw_response=str(resp) if resp else None)

        filled_price = getattr(order, "price", None) or getattr(order, "avg_execution_price", None)
        filled_amount = getattr(order, "filled_amount", None) or getattr(order, "base_amount", None)
        order_status = getattr(order, "status", None)
        logger.info(f"Lighter order placed: {client_order_index} market={market_index}")
        return OrderResult(
            success=True,
            order_id=str(client_order_index),
            filled_price=float(filled_price) / 10 ** meta["price_decimals"] if filled_price is not None else None,
            filled_amount=float(filled_amount) / 10 ** meta["size_decimals"] if filled_amount is not None else None,
            order_status=str(order_status) if order_status is not None else None,
            raw_response=str(resp) if resp else None,
        )

    async def set_stop_loss(
        self,
        symbol: str,
        pos_side: str,
        stop_price: float,
        trigger_type: str = "mark",
        reduce_only: bool = True,
    ) -> OrderResult:
        await self._ensure_clients()
        positions = [p for p in await self.get_open_positions(symbol) if p.side == pos_side]
        if not positions:
            return OrderResult(success=False, error=f"No open {pos_side} position on {symbol}")
        position = positions[0]
        is_ask = exit_side(pos_side) == SIDE_SELL
        if trigger_type != "mark":
            logger.debug(f"Lighter stops trigger on mark price; ignoring trigger_type={trigger_type}")

        try:
            market_index = await self._market_index(symbol)
            meta = await self._get_market_meta(market_index)
            await self._cancel_stop_orders(market_index)

            worst = stop_price * (1 - MARKET_SLIPPAGE) if is_ask else stop_price * (1 + MARKET_SLIPPAGE)
            price_int, amount_int = self._encode(meta, worst, position.size)
            trigger_int, _ = self._encode(meta, stop_price, 0)
            client_order_index = int(time.time() * 1000) % (2**31)

            order, resp, error = await self._signer_client.create_order(
                market_index=market_index,
                client_order_index=client_order_index,
                base_amount=amount_int,
                price=price_int,
                is_ask=is_ask,
                order_type=2,       # STOP_LOSS
                time_in_force=0,    # IMMEDIATE_OR_CANCEL once triggered
                reduce_only=reduce_only,
                trigger_price=trigger_int,
            )
        except GatewayError as e:
            return OrderResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"Lighter stop-loss failed: {e}")
            return OrderResult(success=False, error=str(e))

        if error is not None:
            logger.error(f"Lighter stop-loss rejected: {error}")
            return OrderResult(success=False, error=str(error), raw_response=str(resp) if resp else None)
        logger.info(f"Lighter stop-loss set at {stop_price} for {pos_side} {symbol}")
        return OrderResult(
            success=True,
            order_id=str(client_order_index),
            order_status=str(getattr(order, "status", "")) or None,
            raw_response=str(resp) if resp else None,
        )

    async def _cancel_stop_orders(self, market_index: int):
        """Cancel resting reduce-only trigger orders on ``market_index``."""
        import lighter

        token, error = self._signer_client.create_auth_token_with_expiry()
        if error is not None:
            raise GatewayError(f"Lighter auth token failed: {error}")
        resp = await lighter.OrderApi(self._api_client).account_active_orders(
            account_index=self.account_index, market_id=market_index, auth=token
        )
        for o in getattr(resp, "orders", None) or []:
            trigger = float(getattr(o, "trigger_price", 0) or 0)
            if trigger > 0 and getattr(o, "reduce_only", False):
                _cancel, cancel_resp, cancel_error = await self._signer_client.cancel_order(
                    market_index=market_index, order_index=int(o.order_index)
                )
                if cancel_error is not None:
                    raise GatewayError(f"Lighter cancel of stop {o.order_index} rejected: {cancel_error}")
                logger.info(f"Lighter cancelled previous stop {o.order_index} on market {market_index}")

    async def close(self):
        """Close SDK clients."""
        if self._api_client is not None:
            await self._api_client.close()
        if self._signer_client is not None and hasattr(self._signer_client, "close"):
            await self._signer_client.close()
        self._api_client = None
        self._signer_client = None
        self._market_meta = {}
        self._market_ids = {}
