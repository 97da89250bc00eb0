# edgefeed/utils/calcs.py
"""Odds conversions shared by the detectors."""

import math
from typing import Any


class ArithmeticDegenerate(ValueError):
    """Raised when an odds price cannot produce a finite decimal value."""

    pass


def validate_american(price: Any) -> int:
    """Return ``price`` as a non-zero American odds integer.

    Raises:
        ArithmeticDegenerate: For zero, non-numeric, non-finite or fractional prices.
    """
    if isinstance(price, bool):
        raise ArithmeticDegenerate(f"Boolean is not an odds price: {price!r}")
    try:
        value = float(price)
    except (TypeError, ValueError) as e:
        raise ArithmeticDegenerate(f"Non-numeric odds price: {price!r}") from e
    if not math.isfinite(value) or value != int(value):
        raise ArithmeticDegenerate(f"Odds price must be a finite integer: {price!r}")
    value = int(value)
    if value == 0:
        raise ArithmeticDegenerate("Odds price must be non-zero")
    return value


def american_to_decimal(price: Any) -> float:
    """Convert American odds to decimal odds.

    +150 -> 2.50, -110 -> 1.909...
    """
    american = validate_american(price)
    if american > 0:
        return 1 + american / 100
    return 1 + 100 / abs(american)


def decimal_to_american(decimal_odds: float) -> int:
    if decimal_odds <= 1:
        raise ArithmeticDegenerate(f"Decimal odds must exceed 1: {decimal_odds}")
    if decimal_odds >= 2.0:
        return int(round((decimal_odds - 1) * 100))
    return int(round(-100 / (decimal_odds - 1)))


def implied_probability(price: Any) -> float:
    """Implied probability (0-1) of an American odds price."""
    return 1 / american_to_decimal(price)


def format_american(price: int) -> str:
    return f"+{price}" if price > 0 else str(price)
