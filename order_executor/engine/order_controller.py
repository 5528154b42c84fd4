"""Order-execution controller.

One ``run_tick`` call is one attempted execution of the latest trading signal
for one user/exchange:

    signal -> idempotency check -> (stop-loss maintenance | size -> news gate
    -> create pending order -> flatten -> place -> verify -> filled -> protect)

Every status write goes through the order store. The controller depends only on
the injected gateway/store/source interfaces.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from order_executor.models.order import (
    ORDER_DIR_ENTRY,
    ORDER_DIR_EXIT,
    ORDER_STATUS_CANCELED_ERROR,
    ORDER_STATUS_ERROR,
    ORDER_STATUS_FILLED,
    ORDER_STATUS_PENDING,
    Order,
)
from order_executor.models.trading_signal import TradingSignal
from order_executor.services import risk_sizing
from order_executor.services.audit import AuditLog
from order_executor.services.gateways.base import (
    POS_LONG,
    POS_SHORT,
    ExchangeGateway,
    GatewayError,
    OrderRequest,
    OrderResult,
    Position,
    entry_side,
)
from order_executor.services.market_data import CandleSource
from order_executor.services.news_gate import TradeGateDecision, can_enter_trade_at
from order_executor.services.news_source import NewsSource
from order_executor.services.order_store import OrderStore
from order_executor.services.risk_sizing import RiskSession, SessionMultipliers
from order_executor.services.stop_loss_trail import calc_stop_loss, next_stop
from order_executor.utils.trading import normalize_to_usdt, percent_of_float_safe

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ControllerState(str, Enum):
    START = "start"
    SIGNAL_FETCHED = "signal_fetched"
    IDEMPOTENCY_CHECKED = "idempotency_checked"
    STOP_LOSS_MAINTENANCE = "stop_loss_maintenance"
    SIZED = "sized"
    GATE_CHECKED = "gate_checked"
    FLATTENED = "flattened"
    PLACED = "placed"
    VERIFIED = "verified"
    PROTECTED = "protected"
    DONE = "done"
    ERROR = "error"


class ControllerError(Exception):
    """A step failed; ``status`` is what the entry order is marked with."""

    status = ORDER_STATUS_ERROR

    def __init__(self, message: str, raw_response: str | None = None):
        super().__init__(message)
        self.raw_response = raw_response


class SizingError(ControllerError):
    pass


class FlattenError(ControllerError):
    def __init__(self, message: str, status: str = ORDER_STATUS_ERROR, raw_response: str | None = None):
        super().__init__(message, raw_response)
        self.status = status


class PlacementError(ControllerError):
    pass


class VerificationError(ControllerError):
    pass


class PollTimeout(TimeoutError):
    """A bounded poll ran out of time. Cancellation surfaces as CancelledError instead."""


async def wait_until(
    probe: Callable[[], Awaitable[T | None]],
    timeout: float,
    interval: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    what: str = "condition",
) -> T:
    """Poll ``probe`` until it returns a truthy value.

    Bounded both by wall clock and by ``timeout / interval`` attempts, so a
    stubbed sleep cannot spin forever.
    """
    deadline = time.monotonic() + timeout
    max_attempts = max(1, math.ceil(timeout / interval)) + 1 if interval > 0 else 1
    for attempt in range(max_attempts):
        result = await probe()
        if result:
            return result
        if attempt + 1 >= max_attempts or time.monotonic() >= deadline:
            break
        await sleep(interval)
    raise PollTimeout(f"Timed out after {timeout}s waiting for {what}")


@dataclass(frozen=True)
class ControllerConfig:
    user_id: int
    account_id: int
    exchange_name: str  # exchange name as written on signals
    symbol: str  # signal symbol, e.g. "BTCUSD"
    order_size_percent: float = 25.0
    stop_loss_pct: float = 1.0
    stop_trigger_type: str = "mark"
    multipliers: SessionMultipliers = field(default_factory=SessionMultipliers)
    news_gate_enabled: bool = True
    news_block_before: timedelta = timedelta(minutes=15)
    news_block_after: timedelta = timedelta(minutes=15)
    news_countries: tuple[str, ...] = ("US",)
    news_lookaround: timedelta = timedelta(hours=12)
    trail_timeframe_minutes: int = 15
    trail_lookback: int = 20
    verify_timeout: float = 15.0
    flat_timeout: float = 15.0
    poll_interval: float = 0.5
    stop_loss_attempts: int = 3

    @classmethod
    def from_account(cls, account, settings) -> "ControllerConfig":
        def _dec(v):
            return None if v is None else Decimal(str(v))

        return cls(
            user_id=account.user_id,
            account_id=account.id,
            exchange_name=account.signal_exchange,
            symbol=account.symbol,
            order_size_percent=account.order_size_percent,
            stop_loss_pct=account.stop_loss_pct,
            stop_trigger_type=account.stop_trigger_type,
            multipliers=SessionMultipliers(
                us=_dec(account.us_multiplier),
                london=_dec(account.london_multiplier),
                asia=_dec(account.asia_multiplier),
                dead_zone=_dec(account.dead_zone_multiplier),
                weekend_holiday=_dec(account.weekend_holiday_multiplier),
                default=_dec(account.default_multiplier),
                enable_no_trade_window=account.enable_no_trade_window,
            ),
            news_gate_enabled=account.news_gate_enabled,
            news_block_before=timedelta(minutes=account.news_block_before_minutes),
            news_block_after=timedelta(minutes=account.news_block_after_minutes),
            news_countries=tuple(settings.news_countries),
            news_lookaround=timedelta(hours=settings.news_lookaround_hours),
            trail_timeframe_minutes=account.trail_timeframe_minutes,
            trail_lookback=account.trail_lookback,
            verify_timeout=settings.verify_timeout_seconds,
            flat_timeout=settings.flat_timeout_seconds,
            poll_interval=settings.poll_interval_seconds,
            stop_loss_attempts=settings.stop_loss_attempts,
        )


@dataclass
class TickResult:
    state: ControllerState
    status: str  # "success", "error", "skipped"
    action: str
    message: str | None = None
    order_id: int | None = None
    session: str | None = None
    details: dict = field(default_factory=dict)


class OrderController:
    def __init__(
        self,
        config: ControllerConfig,
        gateway: ExchangeGateway,
        store: OrderStore,
        news_source: NewsSource | None = None,
        candle_source: CandleSource | None = None,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.gateway = gateway
        self.store = store
        self.news_source = news_source
        self.candle_source = candle_source
        self.audit = audit
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep
        self.state = ControllerState.START
        self._tag = f"[account_{config.account_id}]"

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def run_tick(self) -> TickResult:
        self.state = ControllerState.START
        cfg = self.config

        try:
            signals = self.store.find_latest_signal(cfg.symbol, cfg.exchange_name, limit=1)
        except Exception as e:
            logger.error(f"{self._tag} Signal lookup failed: {e}", exc_info=True)
            self._capture(e, "run_tick", context={"symbol": cfg.symbol, "exchange": cfg.exchange_name})
            return self._result("error", "signal_fetch_failed", str(e))

        if not signals:
            return self._result("skipped", "no_signal", f"No signal for {cfg.symbol} on {cfg.exchange_name}")

        signal = signals[0]
        self.state = ControllerState.SIGNAL_FETCHED

        try:
            existing = self.store.find_order(cfg.user_id, str(signal.id), ORDER_DIR_ENTRY)
        except Exception as e:
            logger.error(f"{self._tag} Order lookup for signal {signal.id} failed: {e}", exc_info=True)
            self._capture(e, "run_tick", context={"signal_id": signal.id})
            return self._result("error", "order_lookup_failed", str(e))
        self.state = ControllerState.IDEMPOTENCY_CHECKED
        if existing is not None:
            if existing.status == ORDER_STATUS_FILLED:
                return await self.maintain_stop_loss(existing)
            action = "in_flight" if existing.status == ORDER_STATUS_PENDING else "not_retried"
            return self._result(
                "skipped", action,
                f"Signal {signal.id} already has entry order {existing.id} ({existing.status})",
                order_id=existing.id,
            )

        return await self._execute_entry(signal)

    async def _execute_entry(self, signal: TradingSignal) -> TickResult:
        cfg = self.config
        symbol = normalize_to_usdt(signal.symbol)
        pos_side = _pos_side_for(signal)
        side = entry_side(pos_side)
        now = self.clock()

        # Size
        try:
            quantity, session, price = await self._size(symbol, now)
        except (GatewayError, SizingError) as e:
            logger.error(f"{self._tag} Sizing failed: {e}")
            self._capture(e, "size", context={"signal_id": signal.id, "symbol": symbol})
            return self._result("error", "sizing_failed", str(e))
        self.state = ControllerState.SIZED

        if session == RiskSession.NO_TRADE or quantity <= 0:
            return await self._flatten_and_skip(symbol, session)

        # News gate
        if cfg.news_gate_enabled:
            decision = await self._check_news(now)
            if decision is None:
                return self._result(
                    "skipped", "news_unavailable", "Calendar unavailable, not entering",
                    session=session.value,
                )
            if not decision.allowed:
                title = decision.blocking_event.title if decision.blocking_event else "?"
                logger.info(f"{self._tag} Entry blocked by news '{title}' until {decision.next_allowed_utc}")
                return self._result(
                    "skipped", "blocked_by_news",
                    f"Blocked by '{title}' until {decision.next_allowed_utc.isoformat()}",
                    session=session.value, details={"gate": decision.to_dict()},
                )
        self.state = ControllerState.GATE_CHECKED

        # Durable record of the attempt before any exchange write
        try:
            order = self.store.create_order(Order(
                user_id=cfg.user_id,
                exchange_id=cfg.account_id,
                external_id=str(signal.id),
                symbol=symbol,
                side=side,
                pos_side=pos_side,
                order_type="Market",
                quantity=quantity,
                price=price,
                stop_loss_pct=cfg.stop_loss_pct,
                status=ORDER_STATUS_PENDING,
                order_dir=ORDER_DIR_ENTRY,
            ))
        except Exception as e:
            logger.error(f"{self._tag} Could not create entry order for signal {signal.id}: {e}")
            self._capture(e, "create_order", context={"signal_id": signal.id})
            return self._result("error", "order_create_failed", str(e), session=session.value)

        try:
            await self._flatten(order)
            self.state = ControllerState.FLATTENED

            result = await self._place(order)
            self.state = ControllerState.PLACED

            position = await self._verify(order)
            self.state = ControllerState.VERIFIED
        except ControllerError as e:
            return self._fail(order, e, session)
        except GatewayError as e:
            return self._fail(order, ControllerError(str(e)), session)
        except asyncio.CancelledError:
            # never leave the entry pending
            self._fail(order, VerificationError(f"Tick cancelled after {self.state.value}"), session)
            raise

        fill_price = position.entry_price or result.filled_price or price
        order = self.store.update_status(
            order.id, ORDER_STATUS_FILLED, "position verified on exchange",
            fill_price=fill_price, raw_response=result.raw_response,
        )
        logger.info(f"{self._tag} Entry {pos_side} {quantity} {symbol} filled at {fill_price} ({session.value})")

        stop = await self._protect(order, position)
        if stop is not None:
            self.state = ControllerState.PROTECTED
        return self._result(
            "success", "filled",
            f"{pos_side} {quantity} {symbol} @ {fill_price}"
            + (f", stop {stop}" if stop is not None else ", stop NOT set"),
            order_id=order.id, session=session.value,
            details={"fill_price": fill_price, "stop_loss_price": stop, "quantity": quantity},
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _size(self, symbol: str, now: datetime) -> tuple[float, RiskSession, float]:
        cfg = self.config
        margin = await self.gateway.get_available_margin(symbol)
        price = await self.gateway.get_ticker(symbol)
        if price <= 0:
            raise SizingError(f"Non-positive price {price} for {symbol}")

        base_available = margin / price
        base_qty = percent_of_float_safe(base_available, cfg.order_size_percent)
        qty, session = risk_sizing.size(Decimal(str(base_qty)), now, cfg.multipliers)
        logger.info(
            f"{self._tag} Sizing: margin={margin} price={price} base={base_qty:.8f} "
            f"session={session.value} qty={qty}"
        )
        return float(qty), session, price

    async def _flatten_and_skip(self, symbol: str, session: RiskSession) -> TickResult:
        try:
            positions = await self.gateway.get_open_positions(symbol)
            if positions:
                await self.gateway.close_all(symbol)
                logger.info(f"{self._tag} {session.value}: flattened {len(positions)} position(s) on {symbol}")
        except GatewayError as e:
            logger.error(f"{self._tag} Flatten during {session.value} failed: {e}")
            self._capture(e, "flatten_and_skip", context={"symbol": symbol, "session": session.value})
            return self._result("error", "no_trade_flatten_failed", str(e), session=session.value)
        return self._result(
            "skipped", "no_trade",
            f"Session {session.value}: no new order" + (f", closed {len(positions)} position(s)" if positions else ""),
            session=session.value,
        )

    async def _check_news(self, now: datetime) -> TradeGateDecision | None:
        cfg = self.config
        if self.news_source is None:
            return can_enter_trade_at(now, [], cfg.news_block_before, cfg.news_block_after)
        try:
            events = await self.news_source.fetch_important_events(
                now - cfg.news_lookaround, now + cfg.news_lookaround, list(cfg.news_countries)
            )
        except Exception as e:
            logger.warning(f"{self._tag} News events unavailable: {e}")
            self._capture(e, "check_news", level="warning")
            return None
        return can_enter_trade_at(now, events, cfg.news_block_before, cfg.news_block_after)

    async def _flatten(self, entry: Order):
        """Close every open position on the symbol before opening the new one."""
        try:
            positions = await self.gateway.get_open_positions(entry.symbol)
        except GatewayError as e:
            raise FlattenError(f"Position lookup before entry failed: {e}") from e

        for position in positions:
            if position.size <= 0:
                continue
            try:
                request = OrderRequest.reduce_only_close(position)
            except GatewayError as e:
                raise FlattenError(str(e)) from e

            exit_order = self.store.create_order(Order(
                user_id=entry.user_id,
                exchange_id=entry.exchange_id,
                external_id=f"{entry.external_id}:close:{position.side.lower()}",
                symbol=entry.symbol,
                side=request.side,
                pos_side=position.side,
                order_type="Market",
                quantity=position.size,
                price=position.entry_price,
                status=ORDER_STATUS_PENDING,
                order_dir=ORDER_DIR_EXIT,
            ))
            try:
                result = await self.gateway.place_order(request)
            except GatewayError as e:
                self.store.update_status(exit_order.id, ORDER_STATUS_ERROR, f"close failed: {e}")
                raise FlattenError(
                    f"Could not close {position.side} {position.size} {position.symbol}: {e}",
                    status=ORDER_STATUS_CANCELED_ERROR,
                ) from e
            if not result.success:
                self.store.update_status(
                    exit_order.id, ORDER_STATUS_ERROR, f"close rejected: {result.error}",
                    raw_response=result.raw_response,
                )
                raise FlattenError(
                    f"Could not close {position.side} {position.size} {position.symbol}: {result.error}",
                    status=ORDER_STATUS_CANCELED_ERROR,
                    raw_response=result.raw_response,
                )
            self.store.update_status(
                exit_order.id, ORDER_STATUS_FILLED, "close acknowledged",
                fill_price=result.filled_price, raw_response=result.raw_response,
            )
            logger.info(f"{self._tag} Closed stale {position.side} {position.size} {position.symbol}")

        if not any(p.size > 0 for p in positions):
            return

        async def _flat():
            try:
                remaining = await self.gateway.get_open_positions(entry.symbol)
            except GatewayError as e:
                logger.warning(f"{self._tag} Position poll failed while waiting for flat: {e}")
                return None
            return not any(p.size > 0 for p in remaining)

        try:
            await wait_until(_flat, self.config.flat_timeout, self.config.poll_interval, self.sleep, "flat book")
        except PollTimeout as e:
            raise FlattenError(f"Positions still open after close: {e}") from e

    async def _place(self, order: Order) -> OrderResult:
        request = OrderRequest.market(
            symbol=order.symbol,
            side=order.side,
            pos_side=order.pos_side,
            quantity=order.quantity,
            client_order_id=f"oe-{order.id}",
        )
        result = await self.gateway.place_order(request)
        if not result.success:
            raise PlacementError(f"Entry order rejected: {result.error}", raw_response=result.raw_response)
        return result

    async def _verify(self, order: Order) -> Position:
        async def _matching():
            try:
                positions = await self.gateway.get_open_positions(order.symbol)
            except GatewayError as e:
                logger.warning(f"{self._tag} Position poll failed while verifying order {order.id}: {e}")
                return None
            for p in positions:
                if p.side == order.pos_side and p.size > 0:
                    return p
            return None

        try:
            return await wait_until(
                _matching, self.config.verify_timeout, self.config.poll_interval, self.sleep,
                f"{order.pos_side} position on {order.symbol}",
            )
        except PollTimeout as e:
            raise VerificationError(f"Entry not confirmed: {e}") from e

    async def _protect(self, order: Order, position: Position) -> float | None:
        """Attach the initial stop. Failure leaves the order filled without a stop."""
        cfg = self.config
        entry_price = position.entry_price or order.fill_price or order.price
        if not entry_price:
            logger.warning(f"{self._tag} No entry price for order {order.id}; cannot compute stop")
            return None
        stop = float(calc_stop_loss(Decimal(str(entry_price)), Decimal(str(cfg.stop_loss_pct)), order.pos_side))

        last_error = None
        for attempt in range(1, max(1, cfg.stop_loss_attempts) + 1):
            try:
                result = await self.gateway.set_stop_loss(
                    order.symbol, order.pos_side, stop, cfg.stop_trigger_type, True
                )
                if result.success:
                    self.store.update_stop_loss(order.id, stop)
                    logger.info(f"{self._tag} Stop-loss for order {order.id} set at {stop}")
                    return stop
                last_error = result.error
            except GatewayError as e:
                last_error = str(e)
            logger.warning(
                f"{self._tag} Stop-loss attempt {attempt}/{cfg.stop_loss_attempts} "
                f"for order {order.id} failed: {last_error}"
            )
            if attempt < cfg.stop_loss_attempts:
                await self.sleep(cfg.poll_interval)

        self._capture(
            f"Initial stop-loss not set: {last_error}", "protect", level="warning",
            context={"order_id": order.id, "stop": stop},
        )
        return None

    async def maintain_stop_loss(self, order: Order) -> TickResult:
        """Trail the stop of an already filled entry. Never creates orders."""
        cfg = self.config
        self.state = ControllerState.STOP_LOSS_MAINTENANCE

        try:
            positions = await self.gateway.get_open_positions(order.symbol)
        except GatewayError as e:
            self._capture(e, "maintain_stop_loss", context={"order_id": order.id})
            return self._result("error", "stop_maintenance_failed", str(e), order_id=order.id)

        position = next((p for p in positions if p.side == order.pos_side and p.size > 0), None)
        if position is None:
            return self._result(
                "skipped", "position_closed",
                f"No open {order.pos_side} position for order {order.id}", order_id=order.id,
            )

        if order.stop_loss_price is None:
            stop = await self._protect(order, position)
            if stop is None:
                return self._result("error", "stop_missing", "Initial stop still not set", order_id=order.id)
            return self._result(
                "success", "stop_placed", f"Initial stop placed at {stop}",
                order_id=order.id, details={"stop_loss_price": stop},
            )

        if self.candle_source is None:
            return self._result("skipped", "stop_unchanged", "No candle source", order_id=order.id)
        try:
            candles = await self.candle_source.fetch_candles(
                order.symbol, cfg.trail_timeframe_minutes, cfg.trail_lookback + 2
            )
        except Exception as e:
            logger.warning(f"{self._tag} Candles unavailable for trailing: {e}")
            self._capture(e, "maintain_stop_loss", level="warning", context={"order_id": order.id})
            return self._result("error", "candles_unavailable", str(e), order_id=order.id)

        current = Decimal(str(order.stop_loss_price))
        new_stop, moved = next_stop(order.pos_side, current, candles, cfg.trail_lookback)
        if not moved:
            return self._result("skipped", "stop_unchanged", f"Stop stays at {current}", order_id=order.id)

        try:
            result = await self.gateway.set_stop_loss(
                order.symbol, order.pos_side, float(new_stop), cfg.stop_trigger_type, True
            )
        except GatewayError as e:
            result = OrderResult(success=False, error=str(e))
        if not result.success:
            logger.warning(f"{self._tag} Trailing stop update for order {order.id} failed: {result.error}")
            self._capture(
                f"Trailing stop update failed: {result.error}", "maintain_stop_loss", level="warning",
                context={"order_id": order.id, "stop": float(new_stop)},
            )
            return self._result("error", "stop_update_failed", result.error, order_id=order.id)

        self.store.update_stop_loss(order.id, float(new_stop))
        logger.info(f"{self._tag} Trailing stop for order {order.id}: {current} -> {new_stop}")
        return self._result(
            "success", "stop_moved", f"Stop {current} -> {new_stop}", order_id=order.id,
            details={"previous_stop": float(current), "stop_loss_price": float(new_stop)},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fail(self, order: Order, error: ControllerError, session: RiskSession) -> TickResult:
        failed_in = self.state.value
        logger.error(f"{self._tag} Order {order.id} failed after {failed_in}: {error}")
        self.store.update_status(order.id, error.status, str(error), raw_response=error.raw_response)
        self._capture(
            error, "run_tick", context={"order_id": order.id, "after_state": failed_in, "status": error.status}
        )
        self.state = ControllerState.ERROR
        return self._result(
            "error", type(error).__name__, str(error), order_id=order.id, session=session.value,
            details={"order_status": error.status, "after_state": failed_in},
        )

    def _capture(self, error, method: str, level: str = "error", context: dict | None = None):
        if self.audit is None:
            return
        ctx = {"account_id": self.config.account_id, "user_id": self.config.user_id, **(context or {})}
        self.audit.capture(error, module=__name__, method=method, level=level, context=ctx)

    def _result(self, status: str, action: str, message: str | None = None, **kwargs) -> TickResult:
        self.state = ControllerState.ERROR if status == "error" else ControllerState.DONE
        return TickResult(state=self.state, status=status, action=action, message=message, **kwargs)


def _pos_side_for(signal: TradingSignal) -> str:
    label = (signal.position_label or "").strip().lower()
    if label == "long":
        return POS_LONG
    if label == "short":
        return POS_SHORT
    return POS_LONG if signal.action.strip().lower() == "buy" else POS_SHORT
