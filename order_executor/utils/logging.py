"""Root logger configuration for the API process and the CLI."""

import logging

from order_executor.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# third-party loggers that are noisy at INFO
_QUIET = ("apscheduler.executors.default", "httpx", "httpcore", "ccxt.base.exchange", "telegram.ext")


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
        force=True,
    )
    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)
