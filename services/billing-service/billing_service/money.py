from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def from_minor_units(amount_minor: int | None) -> Decimal:
    if amount_minor is None:
        return Decimal("0.00")
    return round_money(Decimal(int(amount_minor)) / 100)


def to_minor_units(amount) -> int:
    return int((to_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
