"""
Fixed-point money helpers.

All balances and prices are stored as integer cents. Decimal is only used to
parse human price tags coming from import rows and to express percentages.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .exceptions import ValidationError

# Maximum amount: 9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


def require_cents(value, field: str = "amount_cents", *, positive: bool = False) -> int:
    """
    Strict integer-cents check.

    Rejects bools, floats and numeric strings so that no binary floating point
    ever reaches a balance.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of cents")
    if positive and value <= 0:
        raise ValidationError(f"{field} must be > 0")
    if value < 0:
        raise ValidationError(f"{field} must be >= 0")
    if value > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS}")
    return value


def parse_price_tag(value) -> int | None:
    """
    Parse a free-text price from an import row into cents.

    Accepts "99", "99.5", "99,50", " NOK 99.00 ". Returns None for blank input.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("price must be a decimal amount")
    if isinstance(value, int):
        return require_cents(value * 100, "price")
    text = str(value).strip().upper()
    for token in ("NOK", "KR"):
        text = text.replace(token, "")
    text = text.strip().replace(",", ".")
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValidationError(f"price is not a decimal amount: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"price must be a non-negative amount: {value!r}")
    cents = int((amount.quantize(_CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())
    return require_cents(cents, "price")


def percentage(part_cents: int, whole_cents: int) -> Decimal:
    """part / whole * 100, two places, half-up. Zero when whole is zero."""
    if not whole_cents:
        return Decimal("0.00")
    ratio = (Decimal(part_cents) * _HUNDRED) / Decimal(whole_cents)
    return ratio.quantize(_CENT, rounding=ROUND_HALF_UP)


def format_cents(cents: int | None) -> str | None:
    if cents is None:
        return None
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"
