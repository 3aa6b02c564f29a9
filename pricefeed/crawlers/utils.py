"""Shared parsing helpers for price sources."""

import re
from decimal import Decimal, InvalidOperation
from typing import Callable, Hashable, Iterable, List, Optional, TypeVar

T = TypeVar("T")

_NUMERIC_NOISE = re.compile(r"[^0-9,.\-]")


def unique_by_key(items: Iterable[T], key: Callable[[T], Hashable]) -> List[T]:
    """
    De-duplicate items by key, keeping the last occurrence.

    The result is ordered by each key's last sighting.
    """
    seen = {}
    for item in items:
        k = key(item)
        seen.pop(k, None)
        seen[k] = item
    return list(seen.values())


def parse_decimal(text: Optional[str], decimal_separator: str = ",") -> Optional[Decimal]:
    """
    Parse a locale-formatted number.

    With a comma separator "1.234,56" parses as 1234.56; a value with no comma
    but a dot ("1.99") is read with the dot as the decimal point. Blank or
    unparseable input returns None.
    """
    if text is None:
        return None

    s = _NUMERIC_NOISE.sub("", str(text))
    if not s:
        return None

    if decimal_separator == ",":
        if "," in s:
            s = s.replace(".", "").replace(",", ".")
    else:
        s = s.replace(",", "")

    try:
        value = Decimal(s)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def clean_text(value: Optional[str]) -> str:
    """Collapse runs of whitespace and trim"""
    if not value:
        return ""
    return " ".join(value.split())
