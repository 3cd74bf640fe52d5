from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from custody.errors import ValidationError

CENTS = Decimal("0.01")


def parse_amount(amount: int | str | Decimal) -> Decimal:
    """Parse a positive currency amount with two fixed decimal places.

    Floats are rejected: they may already have lost precision.
    """
    if isinstance(amount, (bool, float)):
        raise ValidationError("amount must be given as a string, integer or Decimal", field="amount")
    try:
        d = Decimal(str(amount).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        raise ValidationError("amount is not a number", field="amount") from None
    if not d.is_finite() or d <= 0:
        raise ValidationError("amount must be positive", field="amount")
    if d != d.quantize(CENTS):
        raise ValidationError("amount has more than two decimal places", field="amount")
    return d.quantize(CENTS, rounding=ROUND_HALF_UP)


def format_amount(amount: int | str | Decimal) -> str:
    d = Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)
    return f"{d:,}"
