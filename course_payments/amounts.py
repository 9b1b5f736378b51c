from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[Decimal, int, float, str]

CENTS = Decimal(100)


def _to_decimal(amount: Number) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, float):
        # go through str so 19.99 stays 19.99 instead of its binary expansion
        return Decimal(repr(amount))
    return Decimal(amount)


def format_amount_to_cents(amount: Number) -> int:
    """Major currency units to integer minor units (PayMob ``amount_cents``)."""
    cents = (_to_decimal(amount) * CENTS).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(cents)


def parse_amount_from_cents(cents: int) -> Decimal:
    """Integer minor units back to major units.

    This is also the conversion the intention API needs, since it takes
    amounts in major units.
    """
    return Decimal(int(cents)) / CENTS


def json_amount(amount: Decimal) -> Union[int, float]:
    """Render a Decimal as a JSON number, integral values without fraction."""
    if amount == amount.to_integral_value():
        return int(amount)
    return float(amount)
