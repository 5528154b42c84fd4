"""Shared fixtures. Environment is set before any order_executor import."""

import os

from cryptography.fernet import Fernet

os.environ.setdefault("OE_DATABASE_URL", "sqlite://")
os.environ.setdefault("OE_ENCRYPTION_KEY", Fernet.generate_key().decode())

import pytest  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402

import order_executor.models  # noqa: E402,F401
from order_executor.models.exchange_account import ExchangeAccount  # noqa: E402


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def account(engine) -> ExchangeAccount:
    acc = ExchangeAccount(name="phemex-main", user_id=7, exchange="phemex", symbol="BTCUSD")
    with Session(engine) as session:
        session.add(acc)
        session.commit()
        session.refresh(acc)
    return acc
