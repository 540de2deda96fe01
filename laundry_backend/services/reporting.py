"""
Period statistics: revenues, expenses, paid salaries and net income.

Two bucketing conventions exist side by side. The yearly/monthly report has
always cut periods on server-local boundaries while the two-period comparison
cuts on UTC midnight, so a record stamped close to midnight at a month edge
can land in different months in the two views. Both conventions are kept and
selected explicitly through ``BucketMode``.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

import numpy as np
import pandas as pd

from laundry_backend.config import Settings, get_settings
from laundry_backend.models import PeriodStat, SalaryStatus

from . import data_layer
from .common import parse_month, parse_year
from .errors import InvalidInput

logger = logging.getLogger(__name__)


class View(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class BucketMode(str, Enum):
    LOCAL = "local"
    UTC = "utc"


@dataclass
class Ledgers:
    revenues: pd.DataFrame
    expenses: pd.DataFrame
    salaries: pd.DataFrame
    invoices: pd.DataFrame


def load_ledgers(con: sqlite3.Connection) -> Ledgers:
    # Independent reads; any failure aborts the whole report.
    return Ledgers(
        revenues=data_layer.load_frame(con, "revenues"),
        expenses=data_layer.load_frame(con, "expenses"),
        salaries=data_layer.load_frame(con, "salaries"),
        invoices=data_layer.load_frame(con, "invoices", "paid_amount > 0"),
    )


def parse_view(view) -> View:
    try:
        return View(str(view).lower())
    except ValueError as exc:
        raise InvalidInput("view must be 'monthly' or 'yearly'", code="bad_view") from exc


def _period_keys(stamps: pd.Series, view: View, mode: BucketMode, tz: str) -> pd.Series:
    if mode is BucketMode.LOCAL:
        stamps = stamps.dt.tz_localize("UTC").dt.tz_convert(tz)
    return stamps.dt.strftime("%Y-%m" if view is View.MONTHLY else "%Y")


def _sum_by_period(
    df: pd.DataFrame, date_col: str, amount_col: str, view: View, mode: BucketMode, tz: str
) -> pd.Series:
    if df.empty:
        return pd.Series(dtype=float)
    keys = _period_keys(df[date_col], view, mode, tz)
    return df[amount_col].fillna(0.0).groupby(keys).sum()


def _paid_salaries_by_period(salaries: pd.DataFrame, view: View) -> pd.Series:
    # Salaries carry their own (month, year); no timestamp to bucket.
    if salaries.empty:
        return pd.Series(dtype=float)
    paid = np.where(salaries["status"].eq(SalaryStatus.PAID.value), salaries["amount"], 0.0)
    keys = salaries["year"].astype(int).astype(str)
    if view is View.MONTHLY:
        keys = keys + "-" + salaries["month"].astype(int).map("{:02d}".format)
    return pd.Series(paid, index=salaries.index).groupby(keys).sum()


def build_period_stats(
    ledgers: Ledgers,
    periods: list[str],
    view: View,
    mode: BucketMode,
    tz: str,
) -> list[PeriodStat]:
    """One row per requested period, in request order, zeros where no data."""
    revenues = _sum_by_period(ledgers.revenues, "date", "amount", view, mode, tz).add(
        _sum_by_period(ledgers.invoices, "created_at", "paid_amount", view, mode, tz),
        fill_value=0.0,
    )
    table = (
        pd.DataFrame(
            {
                "revenues": revenues,
                "expenses": _sum_by_period(ledgers.expenses, "date", "amount", view, mode, tz),
                "salaries": _paid_salaries_by_period(ledgers.salaries, view),
            }
        )
        .reindex(periods)
        .fillna(0.0)
        .assign(net_income=lambda d: d["revenues"] - d["expenses"] - d["salaries"])
    )
    return [
        PeriodStat(
            period=period,
            revenues=round(float(row.revenues), 2),
            expenses=round(float(row.expenses), 2),
            salaries=round(float(row.salaries), 2),
            net_income=round(float(row.net_income), 2),
        )
        for period, row in zip(periods, table.itertuples(index=False))
    ]


def _periods_for(view: View, year: int, window: int) -> list[str]:
    if view is View.MONTHLY:
        return [f"{year:04d}-{m:02d}" for m in range(1, 13)]
    return [str(y) for y in range(year - window + 1, year + 1)]


def get_statistics(
    con: sqlite3.Connection,
    view,
    year=None,
    settings: Optional[Settings] = None,
) -> list[PeriodStat]:
    settings = settings or get_settings()
    view = parse_view(view)
    if year is None or year == "":
        if view is View.MONTHLY:
            raise InvalidInput("year is required for the monthly view", code="bad_year")
        year = datetime.now(ZoneInfo(settings.local_timezone)).year
    periods = _periods_for(view, parse_year(year), settings.yearly_window)
    mode = BucketMode(settings.statistics_bucket_mode)
    logger.debug("Statistics %s for %s..%s (%s)", view.value, periods[0], periods[-1], mode.value)
    return build_period_stats(load_ledgers(con), periods, view, mode, settings.local_timezone)


_YEAR_PERIOD = re.compile(r"^\d{4}$")


def _validate_period(period: str, view: View) -> str:
    period = str(period or "").strip()
    if view is View.MONTHLY:
        year, month = parse_month(period)
        return f"{year:04d}-{month:02d}"
    if not _YEAR_PERIOD.match(period):
        raise InvalidInput(f"period must be formatted YYYY, got {period!r}", code="bad_period")
    return period


def compare_statistics(
    con: sqlite3.Connection,
    period1: str,
    period2: str,
    view,
    settings: Optional[Settings] = None,
) -> list[PeriodStat]:
    settings = settings or get_settings()
    view = parse_view(view)
    periods = [_validate_period(period1, view), _validate_period(period2, view)]
    mode = BucketMode(settings.compare_bucket_mode)
    return build_period_stats(load_ledgers(con), periods, view, mode, settings.local_timezone)
