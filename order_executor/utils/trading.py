"""Small helpers shared by the controller and the gateways."""

import logging

logger = logging.getLogger(__name__)


def percent_of_float_safe(value: float, percent: float) -> float:
    """Return ``percent`` of ``value`` with the percent clamped to [1, 100]."""
    if percent < 1:
        logger.warning(f"Order size percent {percent} below 1, clamping to 1")
        percent = 1
    elif percent > 100:
        logger.warning(f"Order size percent {percent} above 100, clamping to 100")
        percent = 100
    return value * percent / 100


def normalize_to_usdt(symbol: str) -> str:
    """Rewrite a ``...USD`` symbol to ``...USDT``; other suffixes pass through uppercased."""
    s = symbol.strip().upper()
    if not s:
        return s
    if s.endswith("USDT"):
        return s
    if s.endswith("USD"):
        return s + "T"
    return s


def base_asset(symbol: str) -> str:
    """BTCUSDT -> BTC, ETHUSD -> ETH."""
    s = normalize_to_usdt(symbol)
    if s.endswith("USDT"):
        return s[:-4]
    return s


def first_letter_upper(text: str) -> str:
    if not text:
        return text
    return text[0].upper() + text[1:].lower()
