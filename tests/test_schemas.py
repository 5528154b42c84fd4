"""Validation rules for account and signal payloads."""

import pytest
from pydantic import ValidationError

from order_executor.schemas.account import AccountCreate, AccountUpdate
from order_executor.schemas.signal import SignalCreate


def _account(**overrides) -> dict:
    data = {"name": " main ", "user_id": 1, "exchange": "Phemex", "api_key": "k", "api_secret": "s"}
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# 1. accounts
# ---------------------------------------------------------------------------

def test_account_normalized():
    acc = AccountCreate(**_account(symbol="btcusd"))
    assert (acc.name, acc.exchange, acc.symbol) == ("main", "phemex", "BTCUSD")


def test_account_requires_key_and_secret():
    with pytest.raises(ValidationError, match="api_key and api_secret"):
        AccountCreate(**_account(api_key=None))


def test_lighter_needs_only_private_key():
    acc = AccountCreate(**_account(exchange="lighter", api_key=None, api_secret="0xabc"))
    assert acc.exchange == "lighter"
    with pytest.raises(ValidationError, match="Lighter private key"):
        AccountCreate(**_account(exchange="lighter", api_secret=None))


@pytest.mark.parametrize("field, value", [
    ("exchange", "binance"),
    ("stop_trigger_type", "bid"),
    ("trail_timeframe_minutes", 7),
    ("order_size_percent", 0),
    ("lighter_host", "mainnet.zklighter.elliot.ai"),
])
def test_account_rejects(field, value):
    with pytest.raises(ValidationError):
        AccountCreate(**_account(**{field: value}))


def test_partial_update_validates_present_fields_only():
    update = AccountUpdate(stop_loss_pct=2.5)
    assert update.model_dump(exclude_unset=True) == {"stop_loss_pct": 2.5}
    with pytest.raises(ValidationError):
        AccountUpdate(stop_trigger_type="bid")


# ---------------------------------------------------------------------------
# 2. signals
# ---------------------------------------------------------------------------

def test_signal_normalized():
    sig = SignalCreate(symbol="btcusdt", action="BUY", position_label="Long", exchange_name="Phemex")
    assert (sig.symbol, sig.action, sig.position_label, sig.exchange_name) == ("BTCUSDT", "buy", "long", "phemex")


def test_flat_label_allowed_with_either_action():
    assert SignalCreate(symbol="BTCUSDT", action="sell", position_label="flat", exchange_name="x").position_label == "flat"


@pytest.mark.parametrize("action, label", [("hold", None), ("buy", "short"), ("sell", "long"), ("buy", "sideways")])
def test_signal_rejects(action, label):
    with pytest.raises(ValidationError):
        SignalCreate(symbol="BTCUSDT", action=action, position_label=label, exchange_name="phemex")
