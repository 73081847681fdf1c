"""Utilities for working with pence amounts and star conversions."""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

PENNY = Decimal("0.01")
PENCE_PER_STAR = 10
DEFAULT_STAR_CONVERSION_RATE_PENCE = 10


def require_pence(amount: int, *, allow_zero: bool = False) -> int:
    """Ensure ``amount`` is a whole number of pence greater than zero.

    ``allow_zero`` relaxes the check to zero or greater.
    """

    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Amounts are whole pence, got {type(amount).__name__}")
    if allow_zero:
        if amount < 0:
            raise ValueError("Amount must be zero or greater.")
    elif amount <= 0:
        raise ValueError("Amount must be greater than zero.")
    return amount


def stars_for_reward(reward_pence: int, stars_override: Optional[int] = None) -> int:
    """Return the stars earned for ``reward_pence``.

    A chore's fixed override wins when set; otherwise one star per ten pence,
    never fewer than one.
    """

    if stars_override is not None:
        return stars_override
    return max(1, reward_pence // PENCE_PER_STAR)


def pence_for_stars(stars: int, conversion_rate_pence: int) -> int:
    require_pence(stars)
    require_pence(conversion_rate_pence)
    return stars * conversion_rate_pence


def format_pence(amount: int) -> str:
    """Return ``amount`` as a currency formatted string (e.g. ``£12.34``)."""

    value = (Decimal(amount) * PENNY).quantize(PENNY, rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return f"{sign}£{abs(value):,.2f}"
