"""Order history API."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from order_executor.api.deps import get_current_user
from order_executor.database import get_session
from order_executor.models.order import Order
from order_executor.models.order_log import OrderLog

router = APIRouter(prefix="/api/orders", tags=["orders"], dependencies=[Depends(get_current_user)])


@router.get("")
def list_orders(
    account_id: int | None = None,
    status: str | None = None,
    order_dir: str | None = None,
    external_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(Order).order_by(Order.created_at.desc())
    if account_id is not None:
        stmt = stmt.where(Order.exchange_id == account_id)
    if status is not None:
        stmt = stmt.where(Order.status == status)
    if order_dir is not None:
        stmt = stmt.where(Order.order_dir == order_dir)
    if external_id is not None:
        stmt = stmt.where(Order.external_id == external_id)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/{order_id}")
def get_order(order_id: int, session: Session = Depends(get_session)):
    order = session.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.get("/{order_id}/logs")
def order_logs(order_id: int, session: Session = Depends(get_session)):
    """Status history of one order, oldest first."""
    if not session.get(Order, order_id):
        raise HTTPException(status_code=404, detail="Order not found")
    return session.exec(
        select(OrderLog).where(OrderLog.order_id == order_id).order_by(OrderLog.created_at, OrderLog.id)
    ).all()
