"""Decimal currency amounts to processor minor units."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

AmountLike = Union[Decimal, int, float, str]

# Minor units per major unit. MXN and USD both use centavos/cents.
MINOR_UNIT_EXPONENT = {
    "MXN": 2,
    "USD": 2,
}


def to_decimal(amount: AmountLike) -> Decimal:
    """Coerce ``amount`` to ``Decimal`` without float artifacts."""
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, bool):
        raise ValueError("Amount must be numeric")
    try:
        # str() first so 0.1 becomes Decimal("0.1"), not its binary expansion
        return Decimal(str(amount))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e


def to_minor_units(amount: AmountLike, currency: str = "MXN") -> int:
    """Convert a decimal amount to an integer of minor units.

    Rounds half-up: ``99.995`` becomes ``10000``, never ``9999``.

    Raises:
        ValueError: If the amount is not a positive finite number or the
            currency is unknown.
    """
    value = to_decimal(amount)
    if not value.is_finite() or value <= 0:
        raise ValueError(f"Amount must be greater than zero, got {amount!r}")

    exponent = MINOR_UNIT_EXPONENT.get(currency.upper())
    if exponent is None:
        raise ValueError(f"Unsupported currency: {currency}")

    minor = int((value * (Decimal(10) ** exponent)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if minor <= 0:
        raise ValueError(f"Amount {amount!r} is below the smallest {currency.upper()} unit")
    return minor


def from_minor_units(minor: int, currency: str = "MXN") -> Decimal:
    exponent = MINOR_UNIT_EXPONENT.get(currency.upper(), 2)
    return Decimal(minor) / (Decimal(10) ** exponent)
