"""Tagged representation of spreadsheet cell values.

openpyxl hands back loosely typed values; this module pins each cell to a
kind once, and the extraction rules per kind live here instead of being
re-derived at every call site.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from marketetl.pipeline.normalize import normalize_numeric


class CellKind(str, Enum):
    EMPTY = "empty"
    STRING = "string"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    DATE = "date"
    FORMULA = "formula"
    ERROR = "error"


# openpyxl data_type codes
_TYPE_CODES = {
    "s": CellKind.STRING,
    "str": CellKind.STRING,
    "inlineStr": CellKind.STRING,
    "n": CellKind.NUMERIC,
    "b": CellKind.BOOLEAN,
    "d": CellKind.DATE,
    "f": CellKind.FORMULA,
    "e": CellKind.ERROR,
}


@dataclass(frozen=True)
class CellValue:
    """A spreadsheet value together with its kind."""

    kind: CellKind
    value: Any = None

    @classmethod
    def from_openpyxl(cls, cell: Any) -> CellValue:
        """Classify an openpyxl cell (regular, read-only or empty)."""
        if cell is None:
            return EMPTY_CELL
        value = getattr(cell, "value", None)
        if value is None:
            return EMPTY_CELL
        # Date-formatted numeric cells arrive already converted
        if isinstance(value, (datetime, date, time)):
            return cls(CellKind.DATE, value)
        if isinstance(value, bool):
            return cls(CellKind.BOOLEAN, value)

        kind = _TYPE_CODES.get(getattr(cell, "data_type", None) or "", None)
        if kind is None:
            kind = cls.classify(value).kind
        return cls(kind, value)

    @classmethod
    def classify(cls, value: Any) -> CellValue:
        """Classify a bare Python value."""
        if value is None:
            return EMPTY_CELL
        if isinstance(value, bool):
            return cls(CellKind.BOOLEAN, value)
        if isinstance(value, (int, float, Decimal)):
            return cls(CellKind.NUMERIC, value)
        if isinstance(value, (datetime, date, time)):
            return cls(CellKind.DATE, value)
        text = str(value)
        if text.startswith("="):
            return cls(CellKind.FORMULA, text)
        return cls(CellKind.STRING, text)

    def as_text(self) -> str:
        """Text rendering; formula cells try string, then number, else ''."""
        if self.kind is CellKind.STRING:
            return str(self.value)
        if self.kind is CellKind.NUMERIC:
            return _number_text(self.value)
        if self.kind is CellKind.BOOLEAN:
            return "true" if self.value else "false"
        if self.kind is CellKind.DATE:
            if isinstance(self.value, datetime):
                return self.value.isoformat()
            if isinstance(self.value, date):
                return datetime.combine(self.value, time()).isoformat()
            return str(self.value)
        if self.kind is CellKind.FORMULA:
            if isinstance(self.value, str) and not self.value.startswith("="):
                return self.value
            if isinstance(self.value, (int, float, Decimal)) and not isinstance(self.value, bool):
                return _number_text(self.value)
            return ""
        return ""

    def as_number(self) -> Optional[Decimal]:
        """Numeric value; formula cells try number, then parsed string, else None."""
        if self.kind is CellKind.NUMERIC:
            return normalize_numeric(self.value)
        if self.kind is CellKind.STRING:
            return normalize_numeric(str(self.value))
        if self.kind is CellKind.FORMULA:
            if isinstance(self.value, (int, float, Decimal)) and not isinstance(self.value, bool):
                return normalize_numeric(self.value)
            if isinstance(self.value, str) and not self.value.startswith("="):
                return normalize_numeric(self.value)
            return None
        return None


EMPTY_CELL = CellValue(CellKind.EMPTY)


def _number_text(value: Any) -> str:
    if isinstance(value, float):
        return repr(value)
    return str(value)
