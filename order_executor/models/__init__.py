"""Database models."""

from order_executor.models.exchange_account import ExchangeAccount
from order_executor.models.trading_signal import TradingSignal
from order_executor.models.order import Order
from order_executor.models.order_log import OrderLog
from order_executor.models.exception_log import ExceptionLog
from order_executor.models.job_log import JobLog
from order_executor.models.news_event import NewsEventRecord
from order_executor.models.user import User

__all__ = [
    "ExchangeAccount",
    "TradingSignal",
    "Order",
    "OrderLog",
    "ExceptionLog",
    "JobLog",
    "NewsEventRecord",
    "User",
]
