"""Shared parsing helpers for service and blueprint input.

parse_date:     returns None on empty input, raises ValueError on bad input
parse_money:    Decimal with 2 places, raises ValueError on bad input
parse_int:      tolerant int parsing for query params
"""
import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
# Numeric(12, 2): ten integer digits
_MONEY_LIMIT = Decimal("1e10")


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)

    Returns None for empty input and raises ValueError for anything else
    that cannot be parsed.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError) as exc:
        raise ValueError(
            f"Invalid date {value!r}. Use YYYY-MM-DD or DD.MM.YYYY."
        ) from exc


def parse_money(value):
    """Parse a monetary amount to a 2-place Decimal.

    Floats go through str() so 1200.1 stays 1200.10 rather than picking up
    binary noise.  Returns None for empty input; amounts that do not fit
    the money columns (10 integer digits) raise ValueError.
    """
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            raise ValueError(f"Invalid amount {value!r}")
        amount = amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount {value!r}") from exc
    if abs(amount) >= _MONEY_LIMIT:
        raise ValueError(f"Amount {value!r} is out of range")
    return amount


def parse_int(value, default=None):
    """Parse an int, returning *default* for empty or malformed input."""
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default
