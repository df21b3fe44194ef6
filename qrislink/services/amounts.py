"""Amount string helpers shared by registration and matching."""
from __future__ import annotations

import re

_LEADING_DIGITS = re.compile(r"\s*([0-9]+)")

# Larger values do not fit a 64-bit SQL integer.
MAX_AMOUNT_DIGITS = 18


def normalize_amount(value: str | int | None) -> str | None:
    """Integer form of an amount string: leading digits only, no leading zeros."""

    if value is None:
        return None
    match = _LEADING_DIGITS.match(str(value))
    if not match:
        return None
    normalized = str(int(match.group(1)))
    if len(normalized) > MAX_AMOUNT_DIGITS:
        return None
    return normalized


def combine_amounts(original_amount: str, unique_amount: str | None) -> str:
    if not unique_amount:
        return original_amount
    return str(int(original_amount) + int(unique_amount))
