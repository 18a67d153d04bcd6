"""Field normalization for vendor OHLCV rows.

Dates go through a fixed cascade of formats; numeric fields collapse every
placeholder or unparseable token to None instead of failing the row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

logger = logging.getLogger(__name__)

# Tried in order. strptime's %m/%d accept one or two digits, so this single
# entry covers both M/d/yyyy and MM/dd/yyyy.
DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%Y/%m/%d",
)

# Day 0 of spreadsheet serial dates
SPREADSHEET_EPOCH = datetime(1899, 12, 30)

NULL_TOKENS = frozenset({"", "null", "n/a", "na", "n", "-", "--"})

NumericInput = Union[str, int, float, Decimal, None]


def parse_date(value: str) -> Optional[datetime]:
    """Parse a vendor date string into a naive midnight (or exact) timestamp.

    Cascade: ISO date, M/d/yyyy, MM/dd/yyyy, yyyy/MM/dd, ISO datetime,
    then a numeric spreadsheet serial day count. First match wins.

    Returns:
        datetime, or None when nothing in the cascade matches
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    if "T" in text or " " in text:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            pass
        else:
            return parsed.replace(tzinfo=None)

    serial = _serial_to_datetime(text)
    if serial is not None:
        return serial

    logger.debug(f"Unable to parse date string: '{text}'")
    return None


def _serial_to_datetime(text: str) -> Optional[datetime]:
    try:
        days = int(float(text))  # fractional day (time of day) is dropped
        return SPREADSHEET_EPOCH + timedelta(days=days)
    except (ValueError, OverflowError):
        return None


def normalize_numeric(value: NumericInput) -> Optional[Decimal]:
    """Normalize a numeric field to Decimal, or None.

    Blank, placeholder tokens ("null", "n/a", "na", "n", "-", "--"),
    non-numeric text and non-finite values all become None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, (int, float)):
        # repr keeps the shortest round-tripping form of a float
        number = _to_decimal(repr(value) if isinstance(value, float) else str(value))
    else:
        text = str(value).strip()
        if text.lower() in NULL_TOKENS:
            return None
        number = _to_decimal(text)

    if number is None or not number.is_finite():
        return None
    return number


def _to_decimal(text: str) -> Optional[Decimal]:
    if "_" in text:  # Decimal accepts digit separators, the database does not
        return None
    try:
        return Decimal(text)
    except (InvalidOperation, ValueError):
        return None


def is_numeric_token(token: str) -> bool:
    """True if a staging-file token is a loadable number."""
    return normalize_numeric(token) is not None


def normalize_ticker(value: Optional[str]) -> str:
    """Upper-cased, trimmed ticker; empty string when absent."""
    if value is None:
        return ""
    return str(value).strip().upper()
