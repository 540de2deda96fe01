from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime
from typing import Optional

import pandas as pd

from laundry_backend.models import (
    BillingStatus,
    Hotel,
    InvoiceDetail,
    MonthlyInvoiceSummary,
    PaymentRecord,
)

from . import data_layer
from .common import (
    MONEY_EPSILON,
    hotel_rows,
    month_window,
    parse_month,
    round_money,
    to_cents,
)
from .errors import InvalidInput

logger = logging.getLogger(__name__)

_DETAIL_KEY = ["day", "amount_key", "weight_key", "protectors_key"]


def _ledger_payments(invoices: pd.DataFrame, hotel_name: str) -> pd.Series:
    """Paid amounts from the invoice ledger, keyed by the invoice's own creation month."""
    if invoices.empty:
        return pd.Series(dtype=float)
    own = hotel_rows(invoices, hotel_name, "customer_name")
    if own.empty:
        return pd.Series(dtype=float)
    return (
        own.assign(month=own["created_at"].dt.strftime("%Y-%m"))
        .groupby("month")["paid_amount"]
        .sum()
    )


def _payment_map(payments: pd.DataFrame) -> dict[str, dict]:
    if payments.empty:
        return {}
    return {r["month"]: r for r in payments.to_dict("records")}


def _details(group: pd.DataFrame) -> list[InvoiceDetail]:
    # Resends of the same figures collapse into one visible row; the month
    # total is summed separately over every send.
    details = []
    for (day, amount, weight, protectors), rows in group.groupby(_DETAIL_KEY, sort=False):
        confirmed = rows["confirmed_at"]
        details.append(
            InvoiceDetail(
                date=day,
                amount=float(amount),
                weight_kg=float(weight),
                protectors_amount=float(protectors),
                sent_at=rows["sent_at"].max().to_pydatetime(),
                send_count=len(rows),
                email_send_ids=[str(i) for i in rows["id"]],
                confirmed_at=confirmed.min().to_pydatetime() if confirmed.notna().all() else None,
            )
        )
    details.sort(key=lambda d: (d.date, d.sent_at), reverse=True)
    return details


def build_monthly_summaries(
    sends: pd.DataFrame,
    invoices: pd.DataFrame,
    payments: pd.DataFrame,
    hotel_name: str,
) -> list[MonthlyInvoiceSummary]:
    sends = hotel_rows(sends, hotel_name)
    if sends.empty:
        return []

    sends = sends.assign(
        month=sends["date"].dt.strftime("%Y-%m"),
        day=sends["date"].dt.strftime("%Y-%m-%d"),
        amount_key=sends["total_amount"].fillna(0.0).round(2),
        weight_key=sends["total_weight"].fillna(0.0).round(2),
        protectors_key=sends["protectors_amount"].fillna(0.0).round(2),
    )
    totals = sends.groupby("month")["total_amount"].sum()
    ledger_paid = _ledger_payments(invoices, hotel_name)
    records = _payment_map(payments)

    summaries = []
    for month in sorted(totals.index, reverse=True):
        total = round_money(totals[month])
        record = records.get(month)
        if record is not None:
            paid = round_money(record["paid_amount"])
            is_paid = bool(record["is_paid"])
        else:
            paid = round_money(ledger_paid.get(month, 0.0))
            is_paid = False
        remaining = round(total - paid, 2)
        status = BillingStatus.PAID if remaining <= 0 and total > 0 else BillingStatus.PENDING
        summaries.append(
            MonthlyInvoiceSummary(
                month=month,
                total_amount=total,
                paid_amount=paid,
                remaining_amount=remaining,
                status=status,
                is_paid=is_paid,
                invoice_details=_details(sends[sends["month"] == month]),
            )
        )
    return summaries


def get_monthly_invoices(
    con: sqlite3.Connection, hotel: Hotel, month: Optional[str] = None
) -> list[MonthlyInvoiceSummary]:
    start, end = month_window(month) if month else (None, None)
    sends = data_layer.load_email_sends(con, start, end)
    invoices = data_layer.load_frame(con, "invoices")
    payments = data_layer.load_payments(con, hotel.user_id)
    return build_monthly_summaries(sends, invoices, payments, hotel.hotel_name)


def _parse_paid(paid_amount) -> float:
    try:
        paid = float(paid_amount)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"invalid paid amount {paid_amount!r}", code="bad_amount") from exc
    if math.isnan(paid) or math.isinf(paid) or paid < 0:
        raise InvalidInput(f"invalid paid amount {paid_amount!r}", code="bad_amount")
    return paid


def update_payment(
    con: sqlite3.Connection,
    hotel: Hotel,
    month: str,
    paid_amount,
    updated_at: datetime,
) -> PaymentRecord:
    parse_month(month)
    paid = _parse_paid(paid_amount)
    if not hotel.user_id:
        raise InvalidInput(f"hotel {hotel.id} has no owning user", code="hotel_without_user")

    start, end = month_window(month)
    with data_layer.transaction(con, "update payment"):
        # Re-sum at write time; sends may have arrived since the last update.
        sends = hotel_rows(data_layer.load_email_sends(con, start, end), hotel.hotel_name)
        total = round_money(sends["total_amount"].sum()) if not sends.empty else 0.0
        is_paid = total > 0 and to_cents(paid) >= to_cents(total) - to_cents(MONEY_EPSILON)
        data_layer.upsert_payment(con, hotel.user_id, month, paid, is_paid, updated_at)
        record = data_layer.fetch_payment(con, hotel.user_id, month)

    logger.info(
        "Payment for %s %s set to %.2f of %.2f (paid=%s)",
        hotel.hotel_name, month, paid, total, is_paid,
    )
    return record
