from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

_CENT = Decimal("0.01")
_MILLI = Decimal("0.001")
_PRICE = Decimal("0.00001")


def to_decimal(value: object) -> Decimal:
    """Coerce str/int/float/Decimal to Decimal; floats go through str() to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value).strip().replace(",", "."))


def round_money(value: object) -> Decimal:
    return to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def format_amount(value: object) -> str:
    """Money as it appears on the wire: 2 decimals, '.' separator, no grouping."""
    return f"{round_money(value):.2f}"


def format_quantity(value: object) -> str:
    q = to_decimal(value).quantize(_MILLI, rounding=ROUND_HALF_UP)
    return f"{q:.3f}"


def format_price(value: object) -> str:
    """Unit price with up to 5 decimals, never fewer than 2."""
    p = to_decimal(value).quantize(_PRICE, rounding=ROUND_HALF_UP)
    text = f"{p:.5f}".rstrip("0")
    whole, _, frac = text.partition(".")
    return f"{whole}.{frac.ljust(2, '0')}"


def format_rate(value: object) -> str:
    """Tax rate as a 2-decimal percentage, e.g. ``25.00``."""
    return format_amount(value)


def format_percent(value: object) -> str:
    """Tax rate as a whole percentage, e.g. ``25``."""
    return str(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cis_datetime(value: datetime) -> str:
    return value.strftime("%d.%m.%YT%H:%M:%S")


def format_iso_date(value: date | datetime) -> str:
    return value.strftime("%Y-%m-%d")


def format_eur(value: object) -> str:
    """Human-readable Croatian style: 1.234,56 EUR."""
    d = round_money(value)
    formatted = f"{d:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"{formatted} EUR"
