"""System API: health check, scheduler status, job logs, exceptions, manual trigger, emergency stop."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from order_executor.api.deps import get_current_user
from order_executor.database import get_session
from order_executor.models.exception_log import ExceptionLog
from order_executor.models.job_log import JobLog

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(get_current_user)])
def scheduler_status():
    """Current scheduler state with job details."""
    from order_executor.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.post("/trigger/{account_id}", dependencies=[Depends(get_current_user)])
async def trigger_account(account_id: int):
    """Manually run one tick for an account, even if it is disabled."""
    from order_executor.engine.account_job import run_account_tick

    result = await run_account_tick(account_id, force=True)
    if result is None:
        raise HTTPException(status_code=409, detail=f"Tick for account {account_id} did not run (see job logs)")
    return {
        "status": result.status,
        "action": result.action,
        "message": result.message,
        "order_id": result.order_id,
        "session": result.session,
        "state": result.state.value,
    }


@router.get("/logs", dependencies=[Depends(get_current_user)])
def job_logs(
    account_id: int | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(JobLog).order_by(JobLog.timestamp.desc())
    if account_id is not None:
        stmt = stmt.where(JobLog.account_id == account_id)
    if status is not None:
        stmt = stmt.where(JobLog.status == status)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/exceptions", dependencies=[Depends(get_current_user)])
def exception_logs(
    level: str | None = None,
    module: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(ExceptionLog).order_by(ExceptionLog.created_at.desc())
    if level is not None:
        stmt = stmt.where(ExceptionLog.level == level)
    if module is not None:
        stmt = stmt.where(ExceptionLog.module == module)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


class EmergencyStopRequest(BaseModel):
    close_positions: bool = True
    disable_accounts: bool = True


@router.post("/emergency-stop", dependencies=[Depends(get_current_user)])
async def emergency_stop(body: EmergencyStopRequest):
    """Emergency stop: close all positions and/or disable all accounts."""
    from order_executor.services.emergency_stop import run_emergency_stop

    result = await run_emergency_stop(
        close_positions=body.close_positions,
        disable_accounts=body.disable_accounts,
    )
    return result
