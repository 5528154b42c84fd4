"""Exchange gateway contract shared by every exchange adapter."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

SIDE_BUY = "Buy"
SIDE_SELL = "Sell"
POS_LONG = "Long"
POS_SHORT = "Short"


class GatewayError(Exception):
    """An exchange call failed after the adapter's own retries."""


@dataclass
class OrderResult:
    success: bool
    order_id: str | None = None
    error: str | None = None
    filled_price: float | None = None
    filled_amount: float | None = None
    order_status: str | None = None
    raw_response: str | None = None


@dataclass(frozen=True)
class Position:
    symbol: str
    side: str  # "Long" / "Short"
    size: float
    entry_price: float


@dataclass(frozen=True)
class OrderRequest:
    """Immutable order payload handed to ``ExchangeGateway.place_order``."""

    symbol: str
    side: str
    pos_side: str
    quantity: float
    order_type: str = "Market"
    reduce_only: bool = False
    price: float | None = None
    client_order_id: str | None = None

    def __post_init__(self):
        if self.side not in (SIDE_BUY, SIDE_SELL):
            raise ValueError(f"Unknown order side: {self.side}")
        if self.pos_side not in (POS_LONG, POS_SHORT):
            raise ValueError(f"Unknown position side: {self.pos_side}")
        if self.quantity <= 0:
            raise ValueError(f"Order quantity must be positive, got {self.quantity}")

    @classmethod
    def market(
        cls,
        symbol: str,
        side: str,
        pos_side: str,
        quantity: float,
        client_order_id: str | None = None,
    ) -> "OrderRequest":
        return cls(
            symbol=symbol,
            side=side,
            pos_side=pos_side,
            quantity=quantity,
            client_order_id=client_order_id,
        )

    @classmethod
    def reduce_only_close(cls, position: Position) -> "OrderRequest":
        """Market order on the opposite side that can only shrink ``position``."""
        return cls(
            symbol=position.symbol,
            side=exit_side(position.side),
            pos_side=position.side,
            quantity=position.size,
            reduce_only=True,
        )


def exit_side(pos_side: str) -> str:
    """Order side that closes a position of ``pos_side``."""
    if pos_side == POS_LONG:
        return SIDE_SELL
    if pos_side == POS_SHORT:
        return SIDE_BUY
    raise GatewayError(f"Unknown position side: {pos_side!r}")


def entry_side(pos_side: str) -> str:
    return SIDE_BUY if pos_side == POS_LONG else SIDE_SELL


class ExchangeGateway(ABC):
    """One adapter per exchange; the order controller depends only on this."""

    name: str = "exchange"

    @abstractmethod
    async def get_available_margin(self, symbol: str) -> float:
        """Free quote-currency (USDT/USDC) balance usable for ``symbol``."""

    @abstractmethod
    async def get_ticker(self, symbol: str) -> float:
        """Last traded price."""

    @abstractmethod
    async def get_open_positions(self, symbol: str | None = None) -> list[Position]:
        """Non-zero positions, optionally filtered to ``symbol``."""

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderResult:
        """Submit an order. Rejections are reported in the result, not raised."""

    @abstractmethod
    async def set_stop_loss(
        self,
        symbol: str,
        pos_side: str,
        stop_price: float,
        trigger_type: str = "mark",
        reduce_only: bool = True,
    ) -> OrderResult:
        """Replace the protective stop for the position on ``symbol``."""

    async def close_all(self, symbol: str) -> list[OrderResult]:
        """Flatten every position on ``symbol`` with reduce-only market orders."""
        results = []
        for position in await self.get_open_positions(symbol):
            if position.size <= 0:
                continue
            result = await self.place_order(OrderRequest.reduce_only_close(position))
            if not result.success:
                raise GatewayError(
                    f"Close {position.side} {position.size} {position.symbol} rejected: {result.error}"
                )
            results.append(result)
        return results

    async def close(self):
        """Release network resources."""
