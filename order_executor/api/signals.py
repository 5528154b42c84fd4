"""Trading signal API: the signal generator writes here, the executor reads."""

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from order_executor.api.deps import get_current_user
from order_executor.database import get_session
from order_executor.models.trading_signal import TradingSignal
from order_executor.schemas.signal import SignalCreate, SignalRead

router = APIRouter(prefix="/api/signals", tags=["signals"], dependencies=[Depends(get_current_user)])


@router.get("", response_model=list[SignalRead])
def list_signals(
    symbol: str | None = None,
    exchange_name: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(TradingSignal).order_by(TradingSignal.received_at.desc(), TradingSignal.id.desc())
    if symbol is not None:
        stmt = stmt.where(TradingSignal.symbol == symbol.strip().upper())
    if exchange_name is not None:
        stmt = stmt.where(TradingSignal.exchange_name == exchange_name.strip().lower())
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.post("", response_model=SignalRead, status_code=201)
def create_signal(data: SignalCreate, session: Session = Depends(get_session)):
    fields = data.model_dump()
    if fields["position_label"] is None:
        fields["position_label"] = "long" if data.action == "buy" else "short"
    signal = TradingSignal(**fields)
    session.add(signal)
    session.commit()
    session.refresh(signal)
    return signal
