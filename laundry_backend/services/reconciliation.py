"""
Invoice <-> email-send matching.

Invoices are typed in by hand while email sends are snapshots written by the
dispatch mailer, so there is no key between them. Matching is done on hotel,
date proximity and amounts. The ``match_*`` functions are pure over pandas
frames; ``find_candidates`` / ``confirm_candidates`` add storage.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

import pandas as pd

from laundry_backend.models import Invoice, MatchResult

from . import data_layer
from .common import (
    cents_series,
    hotel_rows,
    month_window,
    normalize_hotel_name,
    round_money,
    to_cents,
)
from .errors import AlreadyConfirmed, Conflict, Forbidden, InvalidInput, NotFound

logger = logging.getLogger(__name__)

# Matching tolerances; tests pin these values.
DATE_WINDOW_DAYS = 30
AMOUNT_TOLERANCE = 0.01
CORROBORATING_TOLERANCE = 1.0
FALLBACK_WINDOW_DAYS = 7


@dataclass(frozen=True)
class MatchSettings:
    date_window_days: int = DATE_WINDOW_DAYS
    amount_tolerance: float = AMOUNT_TOLERANCE
    # weight and protectors are only checked when both sides are nonzero
    corroborating_tolerance: float = CORROBORATING_TOLERANCE
    fallback_window_days: int = FALLBACK_WINDOW_DAYS


@dataclass
class InvoiceSelector:
    invoice_id: Optional[str] = None
    email_send_ids: List[str] = field(default_factory=list)
    date: Optional[str] = None
    month: Optional[str] = None
    amount: Optional[float] = None
    weight_kg: Optional[float] = None
    protectors_amount: Optional[float] = None

    _DESCRIPTOR_FIELDS = ("date", "month", "amount", "weight_kg", "protectors_amount")

    @property
    def has_descriptor(self) -> bool:
        return all(getattr(self, f) is not None for f in self._DESCRIPTOR_FIELDS)

    def missing_descriptor_fields(self) -> list[str]:
        return [f for f in self._DESCRIPTOR_FIELDS if getattr(self, f) is None]


def _to_utc_naive(value: Any) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


def _close(values: pd.Series, target: float, tol: float) -> pd.Series:
    return (cents_series(values) - to_cents(target)).abs() <= to_cents(tol)


def match_invoice_rows(
    invoice: Invoice, sends: pd.DataFrame, settings: MatchSettings = MatchSettings()
) -> pd.DataFrame:
    """Sends within the date window whose amount equals the invoice amount.

    Weight and protectors corroborate: they can reject a row only when both
    the invoice and the send carry a nonzero value.
    """
    if sends.empty or invoice.created_at is None:
        return sends.iloc[0:0]
    amount = round_money(invoice.amount)
    weight = round_money(invoice.total_weight_kg)
    protectors = round_money(invoice.protectors_amount)
    created = _to_utc_naive(invoice.created_at)

    window = pd.Timedelta(days=settings.date_window_days)
    mask = ((sends["date"] - created).abs() <= window) & _close(
        sends["total_amount"], amount, settings.amount_tolerance
    )
    if weight > 0:
        es_weight = sends["total_weight"].fillna(0.0)
        mask &= (es_weight <= 0) | _close(es_weight, weight, settings.corroborating_tolerance)
    if protectors > 0:
        es_prot = sends["protectors_amount"].fillna(0.0)
        mask &= (es_prot <= 0) | _close(es_prot, protectors, settings.corroborating_tolerance)
    return sends[mask]


def match_fallback_rows(
    invoice: Invoice, sends: pd.DataFrame, settings: MatchSettings = MatchSettings()
) -> pd.DataFrame:
    """Narrow date window, amount only. The amount tolerance is never widened."""
    if sends.empty or invoice.created_at is None:
        return sends.iloc[0:0]
    created = _to_utc_naive(invoice.created_at)
    window = pd.Timedelta(days=settings.fallback_window_days)
    mask = ((sends["date"] - created).abs() <= window) & _close(
        sends["total_amount"], round_money(invoice.amount), settings.amount_tolerance
    )
    return sends[mask]


def match_descriptor_rows(
    selector: InvoiceSelector, sends: pd.DataFrame, settings: MatchSettings = MatchSettings()
) -> pd.DataFrame:
    """Same UTC calendar day inside the given month, all three figures within tolerance."""
    if sends.empty:
        return sends
    start, end = month_window(selector.month)
    try:
        target_day = _to_utc_naive(selector.date).normalize()
    except (ValueError, TypeError) as exc:
        raise InvalidInput(f"invalid date {selector.date!r}", code="bad_date") from exc
    tol = settings.amount_tolerance
    mask = (
        (sends["date"] >= start)
        & (sends["date"] < end)
        & (sends["date"].dt.normalize() == target_day)
        & _close(sends["total_amount"], round_money(selector.amount), tol)
        & _close(sends["total_weight"], round_money(selector.weight_kg), tol)
        & _close(sends["protectors_amount"], round_money(selector.protectors_amount), tol)
    )
    return sends[mask]


def _validate(selector: InvoiceSelector) -> None:
    if selector.invoice_id or selector.email_send_ids:
        return
    missing = selector.missing_descriptor_fields()
    if missing:
        raise InvalidInput(
            "invoice id, email send ids or a full descriptor is required "
            f"(missing: {', '.join(missing)})",
            code="selector_incomplete",
        )


def find_candidates(
    con: sqlite3.Connection,
    selector: InvoiceSelector,
    hotel_name: str,
    settings: MatchSettings = MatchSettings(),
) -> tuple[str, pd.DataFrame]:
    """Run the strategies in order and return the first non-empty candidate set."""
    _validate(selector)

    invoice = None
    if selector.invoice_id:
        invoice = data_layer.fetch_invoice(con, selector.invoice_id)
        if invoice is None:
            raise NotFound(f"invoice {selector.invoice_id} not found", code="invoice_not_found")
        if normalize_hotel_name(invoice.customer_name) != normalize_hotel_name(hotel_name):
            logger.warning(
                "Invoice %s belongs to %r, not caller hotel %r",
                invoice.id, invoice.customer_name, hotel_name,
            )
            raise Forbidden("invoice belongs to another hotel")

    sends = pd.DataFrame()
    if invoice is not None or selector.has_descriptor:
        sends = hotel_rows(data_layer.load_email_sends(con), hotel_name)

    attempts: list[tuple[str, Callable[[], pd.DataFrame]]] = []
    if invoice is not None:
        attempts.append(("invoice", lambda: match_invoice_rows(invoice, sends, settings)))
    if selector.email_send_ids:
        attempts.append((
            "explicit_ids",
            lambda: hotel_rows(
                data_layer.load_email_sends_by_ids(con, selector.email_send_ids), hotel_name
            ),
        ))
    if selector.has_descriptor:
        attempts.append(("descriptor", lambda: match_descriptor_rows(selector, sends, settings)))
    if invoice is not None:
        attempts.append(("fallback", lambda: match_fallback_rows(invoice, sends, settings)))

    for strategy, attempt in attempts:
        candidates = attempt()
        logger.debug("Strategy %s produced %d candidates", strategy, len(candidates))
        if not candidates.empty:
            return strategy, candidates

    if invoice is not None:
        raise NotFound(
            f"invoice {invoice.id} exists but no email sends matched it",
            code="no_matching_sends",
        )
    raise NotFound("no email sends matched the selection", code="no_matching_sends")


def confirm_candidates(
    con: sqlite3.Connection,
    strategy: str,
    candidates: pd.DataFrame,
    confirmed_by: str,
    confirmed_at: datetime,
) -> MatchResult:
    pending = candidates[candidates["confirmed_at"].isna()]
    if pending.empty:
        raise AlreadyConfirmed("every matched email send is already confirmed")

    ids = [str(i) for i in pending["id"]]
    with data_layer.transaction(con, "confirm email sends"):
        count = data_layer.confirm_email_sends(con, ids, confirmed_by, confirmed_at)
        if count == 0:
            raise Conflict("email sends were confirmed by a concurrent request")
        confirmed = data_layer.stamped_email_send_ids(con, ids, confirmed_by, confirmed_at)

    if count < len(ids):
        logger.warning("%d of %d email sends were confirmed concurrently", len(ids) - count, len(ids))
    logger.info("Confirmed %d email sends via %s (by %s)", count, strategy, confirmed_by)
    return MatchResult(confirmed_count=count, strategy=strategy, email_send_ids=confirmed)


def match_invoice(
    con: sqlite3.Connection,
    selector: InvoiceSelector,
    hotel_name: str,
    confirmed_by: str,
    confirmed_at: datetime,
    settings: MatchSettings = MatchSettings(),
) -> MatchResult:
    strategy, candidates = find_candidates(con, selector, hotel_name, settings)
    return confirm_candidates(con, strategy, candidates, confirmed_by, confirmed_at)


def confirm_month(
    con: sqlite3.Connection,
    hotel_name: str,
    month: str,
    confirmed_by: str,
    confirmed_at: datetime,
) -> MatchResult:
    start, end = month_window(month)
    sends = hotel_rows(data_layer.load_email_sends(con, start, end), hotel_name)
    if sends.empty:
        raise NotFound(f"no email sends for {month}", code="no_sends_for_month")
    return confirm_candidates(con, "month", sends, confirmed_by, confirmed_at)


def annotate_invoices(
    invoices: pd.DataFrame,
    sends: pd.DataFrame,
    settings: MatchSettings = MatchSettings(),
) -> list[dict[str, Any]]:
    """Read-only view of a hotel's ledger invoices with their matched sends."""
    rows: list[dict[str, Any]] = []
    for rec in invoices.sort_values("created_at", ascending=False).itertuples(index=False):
        invoice = Invoice(
            id=rec.id,
            customer_name=rec.customer_name,
            amount=rec.amount,
            total_weight_kg=rec.total_weight_kg,
            protectors_amount=rec.protectors_amount,
            paid_amount=rec.paid_amount,
            created_at=rec.created_at,
        )
        matched = match_invoice_rows(invoice, sends, settings)
        if matched.empty:
            matched = match_fallback_rows(invoice, sends, settings)

        confirmed = matched["confirmed_at"].dropna() if not matched.empty else pd.Series([], dtype="datetime64[ns]")
        sent = matched["sent_at"].dropna() if not matched.empty else pd.Series([], dtype="datetime64[ns]")
        amount = round_money(invoice.amount)
        paid = round_money(invoice.paid_amount)
        rows.append(
            dict(
                invoice_id=invoice.id,
                date=pd.Timestamp(invoice.created_at).strftime("%Y-%m-%d"),
                amount=amount,
                paid_amount=paid,
                remaining_amount=round(amount - paid, 2),
                weight_kg=round_money(invoice.total_weight_kg),
                protectors_amount=round_money(invoice.protectors_amount),
                email_send_ids=[str(i) for i in matched["id"]] if not matched.empty else [],
                email_send_count=max(len(matched), 1),
                sent_at=(sent.min() if not sent.empty else pd.Timestamp(invoice.created_at)).to_pydatetime(),
                confirmed_at=confirmed.min().to_pydatetime() if not confirmed.empty else None,
            )
        )
    return rows
