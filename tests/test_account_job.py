"""Tests for the scheduled per-account tick wrapper."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import Session, select

from order_executor.engine import account_job
from order_executor.engine.order_controller import ControllerState, TickResult
from order_executor.models.job_log import JobLog


@pytest.fixture
def job_engine(engine, monkeypatch):
    monkeypatch.setattr(account_job, "engine", engine)
    monkeypatch.setattr(account_job, "_account_locks", {})
    return engine


def _logs(engine) -> list[JobLog]:
    with Session(engine) as session:
        return list(session.exec(select(JobLog).order_by(JobLog.id)).all())


def _stub_controller(run_tick) -> MagicMock:
    controller = MagicMock()
    controller.run_tick = run_tick
    controller.state = ControllerState.SIZED
    controller.audit = MagicMock()
    return controller


# ---------------------------------------------------------------------------
# 1. single flight
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(job_engine, account, monkeypatch):
    release = asyncio.Event()
    calls = []

    async def slow_tick(account_id, force=False):
        calls.append(account_id)
        await release.wait()

    monkeypatch.setattr(account_job, "_run_account_tick_once", slow_tick)

    first = asyncio.create_task(account_job.run_account_tick(account.id))
    await asyncio.sleep(0)
    second = await account_job.run_account_tick(account.id)
    release.set()
    await first

    assert second is None
    assert calls == [account.id]
    (log,) = _logs(job_engine)
    assert log.status == "skipped"
    assert log.action == "tick_skipped_overlap"


@pytest.mark.asyncio
async def test_different_accounts_run_concurrently(job_engine, monkeypatch):
    running = []
    both_started = asyncio.Event()

    async def tick(account_id, force=False):
        running.append(account_id)
        if len(running) == 2:
            both_started.set()
        await asyncio.wait_for(both_started.wait(), timeout=1)

    monkeypatch.setattr(account_job, "_run_account_tick_once", tick)
    await asyncio.gather(account_job.run_account_tick(1), account_job.run_account_tick(2))
    assert sorted(running) == [1, 2]


# ---------------------------------------------------------------------------
# 2. tick outcome recording
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_disabled_account_not_run(job_engine, account, monkeypatch):
    build = MagicMock()
    monkeypatch.setattr(account_job, "build_gateway", build)
    assert await account_job.run_account_tick(account.id) is None
    build.assert_not_called()


@pytest.mark.asyncio
async def test_result_written_to_job_log(job_engine, account, monkeypatch):
    gateway = AsyncMock()
    monkeypatch.setattr(account_job, "build_gateway", lambda acc: gateway)
    result = TickResult(
        state=ControllerState.DONE, status="success", action="filled", message="Long 0.005 BTCUSDT",
        order_id=12, session="us_session", details={"fill_price": 50010.0},
    )
    monkeypatch.setattr(
        account_job, "build_controller", lambda acc, gw: _stub_controller(AsyncMock(return_value=result))
    )

    assert await account_job.run_account_tick(account.id, force=True) is result

    gateway.close.assert_awaited_once()
    (log,) = _logs(job_engine)
    assert (log.status, log.action, log.order_id, log.session) == ("success", "filled", 12, "us_session")
    assert log.details == {"state": "done", "fill_price": 50010.0}


@pytest.mark.asyncio
async def test_tick_timeout(job_engine, account, monkeypatch):
    gateway = AsyncMock()
    monkeypatch.setattr(account_job, "build_gateway", lambda acc: gateway)
    monkeypatch.setattr(account_job.settings, "tick_timeout_seconds", 0.01)

    async def hang():
        await asyncio.sleep(5)

    controller = _stub_controller(hang)
    monkeypatch.setattr(account_job, "build_controller", lambda acc, gw: controller)

    result = await account_job.run_account_tick(account.id, force=True)

    assert result.action == "tick_timeout"
    assert "sized" in result.message
    gateway.close.assert_awaited_once()
    controller.audit.capture.assert_called_once()
    assert _logs(job_engine)[0].action == "tick_timeout"


@pytest.mark.asyncio
async def test_gateway_build_failure(job_engine, account, monkeypatch):
    def boom(acc):
        raise ValueError("no credentials")

    monkeypatch.setattr(account_job, "build_gateway", boom)
    monkeypatch.setattr(account_job, "AuditLog", MagicMock())

    assert await account_job.run_account_tick(account.id, force=True) is None
    (log,) = _logs(job_engine)
    assert (log.status, log.action) == ("error", "gateway_unavailable")
