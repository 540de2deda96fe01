from __future__ import annotations

import re
from datetime import datetime

import pandas as pd

from .errors import InvalidInput

# Smallest currency difference treated as a real difference.
MONEY_EPSILON = 0.01

_WHITESPACE = re.compile(r"\s+")
_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_YEAR_RE = re.compile(r"^\d{4}$")


def normalize_hotel_name(name: str | None) -> str:
    if not name:
        return ""
    return _WHITESPACE.sub(" ", str(name).strip()).lower()


def normalize_series(names: pd.Series) -> pd.Series:
    return names.fillna("").astype(str).map(normalize_hotel_name)


def round_money(value) -> float:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return 0.0
    return round(float(value), 2)


def to_cents(value) -> int:
    """Whole tetri; money comparisons happen on these, never on floats."""
    return int(round(round_money(value) * 100))


def cents_series(values: pd.Series) -> pd.Series:
    return (values.fillna(0.0).astype(float) * 100).round()


def parse_month(month: str | None) -> tuple[int, int]:
    """Split a ``YYYY-MM`` key into ``(year, month)``; raises InvalidInput."""
    match = _MONTH_RE.match(str(month or "").strip())
    if not match:
        raise InvalidInput(f"month must be formatted YYYY-MM, got {month!r}", code="bad_month")
    year, num = int(match.group(1)), int(match.group(2))
    if not 1 <= num <= 12:
        raise InvalidInput(f"month out of range: {month!r}", code="bad_month")
    return year, num


def parse_year(year: str | int | None) -> int:
    if isinstance(year, int):
        return year
    if year is None or not _YEAR_RE.match(str(year).strip()):
        raise InvalidInput(f"year must be formatted YYYY, got {year!r}", code="bad_year")
    return int(str(year).strip())


def month_window(month: str) -> tuple[datetime, datetime]:
    """UTC half-open window ``[start, end)`` covering one calendar month."""
    year, num = parse_month(month)
    start = datetime(year, num, 1)
    end = datetime(year + 1, 1, 1) if num == 12 else datetime(year, num + 1, 1)
    return start, end


def hotel_rows(df: pd.DataFrame, hotel_name: str, column: str = "hotel_name") -> pd.DataFrame:
    """Rows of ``df`` whose ``column`` names ``hotel_name`` under normalized comparison."""
    if df.empty:
        return df
    return df[normalize_series(df[column]) == normalize_hotel_name(hotel_name)]
