"""CRUD API for exchange accounts."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from order_executor.api.deps import get_current_user
from order_executor.database import get_session
from order_executor.models.exchange_account import ExchangeAccount
from order_executor.schemas.account import AccountCreate, AccountRead, AccountUpdate
from order_executor.services.encryption import decrypt, encrypt, mask
from order_executor.services.gateways import GatewayError, build_gateway
from order_executor.utils.trading import normalize_to_usdt

router = APIRouter(prefix="/api/accounts", tags=["accounts"], dependencies=[Depends(get_current_user)])

_SECRET_FIELDS = {
    "api_key": "api_key_encrypted",
    "api_secret": "api_secret_encrypted",
    "api_passphrase": "api_passphrase_encrypted",
}


def _to_read(account: ExchangeAccount) -> AccountRead:
    read = AccountRead.model_validate(account)
    try:
        read.api_key_masked = mask(decrypt(account.api_key_encrypted))
    except (ValueError, RuntimeError):
        read.api_key_masked = "<undecryptable>"
    return read


def _get_or_404(session: Session, account_id: int) -> ExchangeAccount:
    account = session.get(ExchangeAccount, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


@router.get("", response_model=list[AccountRead])
def list_accounts(session: Session = Depends(get_session)):
    return [_to_read(a) for a in session.exec(select(ExchangeAccount)).all()]


@router.post("", response_model=AccountRead, status_code=201)
def create_account(data: AccountCreate, session: Session = Depends(get_session)):
    from order_executor.engine.scheduler import add_account_job

    fields = data.model_dump(exclude=set(_SECRET_FIELDS))
    account = ExchangeAccount(**fields)
    for plain, column in _SECRET_FIELDS.items():
        setattr(account, column, encrypt(getattr(data, plain) or ""))

    session.add(account)
    session.commit()
    session.refresh(account)

    if account.run_on_server:
        add_account_job(account.id, account.schedule_seconds)
    return _to_read(account)


@router.get("/{account_id}", response_model=AccountRead)
def get_account(account_id: int, session: Session = Depends(get_session)):
    return _to_read(_get_or_404(session, account_id))


@router.put("/{account_id}", response_model=AccountRead)
def update_account(
    account_id: int,
    data: AccountUpdate,
    session: Session = Depends(get_session),
):
    from order_executor.engine.scheduler import add_account_job, remove_account_job, reschedule_account_job

    account = _get_or_404(session, account_id)
    was_enabled = account.run_on_server
    old_interval = account.schedule_seconds

    update_data = data.model_dump(exclude_unset=True)
    for plain, column in _SECRET_FIELDS.items():
        if plain in update_data:
            value = update_data.pop(plain)
            if value is not None:
                setattr(account, column, encrypt(value))

    for key, value in update_data.items():
        setattr(account, key, value)
    account.updated_at = datetime.now(timezone.utc)

    session.add(account)
    session.commit()
    session.refresh(account)

    if account.run_on_server and not was_enabled:
        add_account_job(account.id, account.schedule_seconds)
    elif not account.run_on_server and was_enabled:
        remove_account_job(account.id)
    elif account.run_on_server and account.schedule_seconds != old_interval:
        reschedule_account_job(account.id, account.schedule_seconds)

    return _to_read(account)


@router.delete("/{account_id}", status_code=204)
def delete_account(account_id: int, session: Session = Depends(get_session)):
    from order_executor.engine.scheduler import remove_account_job

    account = _get_or_404(session, account_id)
    remove_account_job(account.id)
    session.delete(account)
    session.commit()


@router.post("/{account_id}/test")
async def test_account(account_id: int, session: Session = Depends(get_session)):
    """Check credentials by reading margin and the ticker of the account's symbol."""
    account = _get_or_404(session, account_id)
    symbol = normalize_to_usdt(account.symbol)
    try:
        gateway = build_gateway(account)
    except (ValueError, RuntimeError) as e:
        return {"status": "error", "message": str(e)}

    try:
        margin = await gateway.get_available_margin(symbol)
        price = await gateway.get_ticker(symbol)
    except GatewayError as e:
        return {"status": "error", "message": str(e)}
    finally:
        await gateway.close()

    return {"status": "ok", "exchange": account.exchange, "symbol": symbol, "available_margin": margin, "price": price}


@router.get("/{account_id}/positions")
async def account_positions(account_id: int, session: Session = Depends(get_session)):
    """Live positions on the account's symbol."""
    account = _get_or_404(session, account_id)
    symbol = normalize_to_usdt(account.symbol)
    try:
        gateway = build_gateway(account)
    except (ValueError, RuntimeError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        positions = await gateway.get_open_positions(symbol)
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    finally:
        await gateway.close()

    return [
        {"symbol": p.symbol, "side": p.side, "size": p.size, "entry_price": p.entry_price}
        for p in positions
    ]
