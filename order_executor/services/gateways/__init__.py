"""Exchange gateways: one adapter per venue behind ``ExchangeGateway``."""

from order_executor.models.exchange_account import ExchangeAccount
from order_executor.services.encryption import decrypt
from order_executor.services.gateways.base import (
    ExchangeGateway,
    GatewayError,
    OrderRequest,
    OrderResult,
    Position,
)
from order_executor.services.gateways.ccxt_gateway import CCXT_EXCHANGE_IDS, CcxtGateway
from order_executor.services.gateways.lighter_gateway import LighterGateway

SUPPORTED_EXCHANGES = sorted([*CCXT_EXCHANGE_IDS, "lighter"])


def build_gateway(account: ExchangeAccount) -> ExchangeGateway:
    """Create the adapter for ``account.exchange`` with decrypted credentials."""
    exchange = account.exchange.lower()
    if exchange == "lighter":
        return LighterGateway(
            host=account.lighter_host,
            private_key=decrypt(account.api_secret_encrypted),
            api_key_index=account.lighter_api_key_index,
            account_index=account.lighter_account_index,
        )
    if exchange in CCXT_EXCHANGE_IDS:
        if not account.api_key_encrypted or not account.api_secret_encrypted:
            raise ValueError(f"Account {account.id} has no API key/secret for {exchange}")
        return CcxtGateway(
            exchange_name=exchange,
            api_key=decrypt(account.api_key_encrypted),
            api_secret=decrypt(account.api_secret_encrypted),
            password=decrypt(account.api_passphrase_encrypted) if account.api_passphrase_encrypted else None,
            testnet=account.testnet,
        )
    raise ValueError(f"Unsupported exchange: {account.exchange}")


__all__ = [
    "ExchangeGateway",
    "GatewayError",
    "OrderRequest",
    "OrderResult",
    "Position",
    "CcxtGateway",
    "LighterGateway",
    "SUPPORTED_EXCHANGES",
    "build_gateway",
]
