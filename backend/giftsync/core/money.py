from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENTS = Decimal("100")
_TWO_PLACES = Decimal("0.01")


def to_decimal(value: Decimal | float | int | str | None) -> Decimal:
    if value is None:
        return Decimal("0.00")
    try:
        # str() first so 45.1 does not turn into 45.10000000000000142...
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid price value: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid price value: {value!r}")
    return amount.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def to_cents(value: Decimal | float | int | str | None) -> int:
    """Decimal currency units -> integer minor units (45.00 -> 4500)."""
    return int((to_decimal(value) * CENTS).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int | None) -> Decimal:
    """Integer minor units -> decimal currency units (4500 -> Decimal('45.00'))."""
    if cents is None:
        return Decimal("0.00")
    return (Decimal(int(cents)) / CENTS).quantize(_TWO_PLACES)
