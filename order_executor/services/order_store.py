"""Order persistence and idempotency lookups.

``update_status`` and ``update_stop_loss`` are the only mutation paths for an
existing order; each write also appends an ``OrderLog`` snapshot.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from order_executor.models.order import (
    ALLOWED_TRANSITIONS,
    ORDER_STATUS_FILLED,
    Order,
)
from order_executor.models.order_log import OrderLog
from order_executor.models.trading_signal import TradingSignal

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    """Requested status change would move an order backwards."""


class OrderNotFound(Exception):
    pass


class OrderStore(ABC):
    @abstractmethod
    def find_latest_signal(self, symbol: str, exchange_name: str, limit: int = 1) -> list[TradingSignal]:
        ...

    @abstractmethod
    def find_order(self, user_id: int, external_id: str, order_dir: str) -> Order | None:
        ...

    @abstractmethod
    def create_order(self, order: Order) -> Order:
        ...

    @abstractmethod
    def update_status(
        self,
        order_id: int,
        status: str,
        reason: str | None = None,
        *,
        fill_price: float | None = None,
        raw_response: str | None = None,
    ) -> Order:
        ...

    @abstractmethod
    def update_stop_loss(self, order_id: int, stop_price: float) -> Order:
        ...


def _snapshot(order: Order) -> dict:
    return order.model_dump(mode="json", exclude={"raw_response"})


class SqlOrderStore(OrderStore):
    """OrderStore over a SQLModel engine."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def find_latest_signal(self, symbol: str, exchange_name: str, limit: int = 1) -> list[TradingSignal]:
        with Session(self.engine) as session:
            stmt = (
                select(TradingSignal)
                .where(func.upper(TradingSignal.symbol) == symbol.strip().upper())
                .where(func.lower(TradingSignal.exchange_name) == exchange_name.strip().lower())
                .order_by(TradingSignal.received_at.desc(), TradingSignal.id.desc())
                .limit(limit)
            )
            return list(session.exec(stmt).all())

    def find_order(self, user_id: int, external_id: str, order_dir: str) -> Order | None:
        with Session(self.engine) as session:
            return session.exec(
                select(Order)
                .where(Order.user_id == user_id)
                .where(Order.external_id == external_id)
                .where(Order.order_dir == order_dir)
            ).first()

    def find_order_by_id(self, order_id: int) -> Order | None:
        with Session(self.engine) as session:
            return session.get(Order, order_id)

    def list_orders_by_status(self, status: str, order_dir: str | None = None) -> list[Order]:
        with Session(self.engine) as session:
            stmt = select(Order).where(Order.status == status)
            if order_dir is not None:
                stmt = stmt.where(Order.order_dir == order_dir)
            return list(session.exec(stmt.order_by(Order.created_at)).all())

    def create_order(self, order: Order) -> Order:
        with Session(self.engine) as session:
            session.add(order)
            session.flush()
            session.add(OrderLog(
                order_id=order.id,
                event="created",
                status=order.status,
                reason=order.reason,
                snapshot=_snapshot(order),
            ))
            session.commit()
            session.refresh(order)
        logger.info(
            f"Order {order.id} created: {order.order_dir} {order.side} {order.quantity} "
            f"{order.symbol} (signal {order.external_id})"
        )
        return order

    def update_status(
        self,
        order_id: int,
        status: str,
        reason: str | None = None,
        *,
        fill_price: float | None = None,
        raw_response: str | None = None,
    ) -> Order:
        with Session(self.engine) as session:
            order = session.get(Order, order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")
            if status not in ALLOWED_TRANSITIONS.get(order.status, set()):
                raise InvalidTransition(f"Order {order_id}: {order.status} -> {status} not allowed")

            now = datetime.now(timezone.utc)
            order.status = status
            order.reason = reason
            order.updated_at = now
            if fill_price is not None:
                order.fill_price = fill_price
            if raw_response is not None:
                order.raw_response = raw_response
            if status == ORDER_STATUS_FILLED:
                order.executed_at = now
            session.add(order)
            session.add(OrderLog(
                order_id=order.id,
                event="status",
                status=status,
                reason=reason,
                snapshot=_snapshot(order),
            ))
            session.commit()
            session.refresh(order)
        logger.info(f"Order {order_id} -> {status}{f' ({reason})' if reason else ''}")
        return order

    def update_stop_loss(self, order_id: int, stop_price: float) -> Order:
        with Session(self.engine) as session:
            order = session.get(Order, order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")
            previous = order.stop_loss_price
            order.stop_loss_price = stop_price
            order.updated_at = datetime.now(timezone.utc)
            session.add(order)
            session.add(OrderLog(
                order_id=order.id,
                event="stop_loss",
                status=order.status,
                reason=f"stop {previous} -> {stop_price}",
                snapshot=_snapshot(order),
            ))
            session.commit()
            session.refresh(order)
        return order
