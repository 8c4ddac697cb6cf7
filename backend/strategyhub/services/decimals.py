"""Decimal helpers shared by the preview engine, reconcile and exchange adapters."""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

DEFAULT_DECIMALS = 8
MAX_DECIMALS = 18

# Fill tolerance when comparing cumulative fills to the requested amount
FILL_TOLERANCE = Decimal("0.00000001")


def parse_decimal(value: Any, default: str = "0") -> Decimal:
    """Parse a number or numeric string into a Decimal, falling back to default."""
    if value is None or value == "":
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats keep their shortest repr instead of binary noise
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal(default)
    if not result.is_finite():
        return Decimal(default)
    return result


def precision_to_decimals(precision: Any) -> int:
    """Convert an exchange precision to a number of decimal places.

    Exchanges report either decimal places (2) or a tick size (0.01).
    """
    if precision is None or isinstance(precision, bool):
        return DEFAULT_DECIMALS

    value = parse_decimal(precision, default="-1")
    if value >= 0 and value == value.to_integral_value():
        return max(0, min(MAX_DECIMALS, int(value)))
    if value <= 0:
        return DEFAULT_DECIMALS
    if value >= 1:
        return 0
    return max(0, min(MAX_DECIMALS, -value.normalize().as_tuple().exponent))


def format_decimal(value: Decimal, decimals: int) -> str:
    """Render a Decimal with a fixed number of decimal places."""
    quantum = Decimal(1).scaleb(-decimals)
    return str(value.quantize(quantum, rounding=ROUND_HALF_UP))


def normalize_decimal(value: Decimal, precision: Any) -> str:
    return format_decimal(value, precision_to_decimals(precision))


def to_decimal_string(value: Any) -> Optional[str]:
    """Render an exchange-reported number as a plain decimal string."""
    if value is None or value == "":
        return None
    return format(parse_decimal(value).normalize(), "f")
