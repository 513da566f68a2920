from typing import Optional

from config import get_settings


def _split_cents(cents: int) -> tuple[str, int, int]:
    units, rest = divmod(abs(int(cents)), 100)
    return ("-" if cents < 0 else ""), units, rest


def plain_amount(cents: int) -> str:
    """Machine-readable amount: dot decimal separator, no grouping."""
    sign, units, rest = _split_cents(cents)
    return f"{sign}{units}.{rest:02d}"


def format_amount(cents: int) -> str:
    sign, units, rest = _split_cents(cents)
    return f"{sign}{units:,}".replace(",", " ") + f",{rest:02d}"


def format_currency(cents: int, symbol: Optional[str] = None) -> str:
    symbol = get_settings().currency_symbol if symbol is None else symbol
    text = format_amount(cents)
    return f"{text} {symbol}" if symbol else text
