"""Exact conversion between decimal amount strings and token atomic units."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, localcontext

from .errors import InvalidAmountError


_DECIMAL_RE = re.compile(r"^\d+(\.\d+)?$|^\.\d+$")
_PRECISION = 100


def parse_units(amount: str | int | Decimal, decimals: int) -> int:
    """Scale a decimal amount into atomic units without rounding.

    Rejects zero, negative values, non-numeric input and amounts with more
    fractional digits than the token supports.
    """
    if isinstance(amount, float) or isinstance(amount, bool):
        raise InvalidAmountError("Amount must be a decimal string, not a float")

    raw = str(amount).strip()
    if raw.startswith("-"):
        raise InvalidAmountError(f"Amount must be positive: {raw}")
    if not _DECIMAL_RE.match(raw):
        raise InvalidAmountError(f"Invalid amount: {raw!r}")

    try:
        dec = Decimal(raw)
    except InvalidOperation as e:
        raise InvalidAmountError(f"Invalid amount: {raw!r}") from e

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = dec.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise InvalidAmountError(
                f"Amount {raw} has more than {decimals} fractional digits"
            )

    value = int(scaled)
    if value <= 0:
        raise InvalidAmountError(f"Amount must be greater than zero: {raw}")
    return value


def format_units(value: int, decimals: int) -> str:
    """Render atomic units as a plain decimal string (no exponent, no trailing zeros)."""
    if value < 0:
        raise ValueError("Atomic value cannot be negative")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        dec = Decimal(value).scaleb(-decimals)
    text = format(dec, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
