"""
Money helpers. Amounts are integer minor units (centavos).
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

_STRIP = re.compile(r"[R$\s]")


def parse_amount(text: str | None) -> int | None:
    """
    Parse an operator amount into minor units.

    Tolerates currency symbols, spaces, comma decimal separators and
    Brazilian thousand separators ("R$ 1.234,56"). Returns None when the
    text holds no number.
    """
    if text is None:
        return None
    cleaned = _STRIP.sub("", str(text))
    if not cleaned:
        return None
    if "," in cleaned:
        # "1.234,56" -> "1234.56"
        cleaned = cleaned.replace(".", "").replace(",", ".")
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(minor_units: int) -> str:
    """Format minor units as a fixed two-decimal string ("1234.56")."""
    sign = "-" if minor_units < 0 else ""
    units, cents = divmod(abs(minor_units), 100)
    return f"{sign}{units}.{cents:02d}"
