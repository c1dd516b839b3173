"""Money helpers shared by the pricing engine and the stores."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Coerce a stored numeric (Decimal, float, int, str, None) to 2-place Decimal."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_optional_money(value: Any) -> Optional[Decimal]:
    return None if value is None else to_money(value)


def to_decimal(value: Any, default: str = "0") -> Decimal:
    if value is None:
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
