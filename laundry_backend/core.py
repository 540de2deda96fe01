# core.py - billing operations without the HTTP layer

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from laundry_backend.models import (
    Actor,
    DispatchRecord,
    Hotel,
    MatchResult,
    MonthlyInvoiceSummary,
    PaymentRecord,
    PeriodStat,
    PickupDeliveryRequest,
    Role,
)
from laundry_backend.services import billing, confirmation, data_layer, reconciliation, reporting
from laundry_backend.services.common import hotel_rows, month_window
from laundry_backend.services.errors import Forbidden, NotFound


@contextmanager
def connection(path: Optional[Path] = None) -> Iterator[sqlite3.Connection]:
    con = data_layer.get_connection(path)
    try:
        data_layer.init_db(con)
        yield con
    finally:
        con.close()


def _get_hotel(con: sqlite3.Connection, hotel_id: Optional[str]) -> Hotel:
    hotel = data_layer.fetch_hotel(con, hotel_id) if hotel_id else None
    if hotel is None:
        raise NotFound(f"hotel {hotel_id} not found", code="hotel_not_found")
    return hotel


def _actor_hotel(con: sqlite3.Connection, actor: Actor) -> Hotel:
    if not actor.hotel_id:
        raise Forbidden("caller is not attached to a hotel")
    return _get_hotel(con, actor.hotel_id)


def _authorize_hotel(actor: Optional[Actor], hotel: Hotel) -> None:
    if actor is None or actor.role in (Role.ADMIN, Role.MANAGER, Role.MANAGER_ASSISTANT):
        return
    if actor.hotel_id != hotel.id:
        raise Forbidden("hotel belongs to another tenant")


def health() -> dict:
    with connection() as con:
        return {"status": "ok", "has_data": data_layer.db_has_data(con)}


def import_dataset(dataset: data_layer.Dataset, content: bytes) -> int:
    with connection() as con:
        return data_layer.import_csv(con, dataset, content)


# ---------------------------------------------------------------------------
# Invoice matching
# ---------------------------------------------------------------------------

def match_invoice(
    selector: reconciliation.InvoiceSelector,
    actor: Actor,
    settings: reconciliation.MatchSettings = reconciliation.MatchSettings(),
) -> MatchResult:
    with connection() as con:
        hotel = _actor_hotel(con, actor)
        return reconciliation.match_invoice(
            con, selector, hotel.hotel_name, actor.user_id, data_layer.now_utc(), settings
        )


def confirm_month(month: str, actor: Actor) -> MatchResult:
    with connection() as con:
        hotel = _actor_hotel(con, actor)
        return reconciliation.confirm_month(
            con, hotel.hotel_name, month, actor.user_id, data_layer.now_utc()
        )


def list_hotel_invoices(
    hotel_id: str, month: Optional[str] = None, actor: Optional[Actor] = None
) -> list[dict]:
    with connection() as con:
        hotel = _get_hotel(con, hotel_id)
        _authorize_hotel(actor, hotel)
        if month:
            start, end = month_window(month)
            invoices = data_layer.load_frame(
                con, "invoices", "created_at >= ? AND created_at < ?",
                [data_layer.to_iso(start), data_layer.to_iso(end)],
            )
        else:
            invoices = data_layer.load_frame(con, "invoices")
        invoices = hotel_rows(invoices, hotel.hotel_name, "customer_name")
        sends = hotel_rows(data_layer.load_email_sends(con), hotel.hotel_name)
        return reconciliation.annotate_invoices(invoices, sends)


# ---------------------------------------------------------------------------
# Monthly billing
# ---------------------------------------------------------------------------

def get_monthly_invoices(
    hotel_id: str, month: Optional[str] = None, actor: Optional[Actor] = None
) -> list[MonthlyInvoiceSummary]:
    with connection() as con:
        hotel = _get_hotel(con, hotel_id)
        _authorize_hotel(actor, hotel)
        return billing.get_monthly_invoices(con, hotel, month)


def update_payment(
    hotel_id: str, month: str, paid_amount, actor: Optional[Actor] = None
) -> PaymentRecord:
    with connection() as con:
        hotel = _get_hotel(con, hotel_id)
        _authorize_hotel(actor, hotel)
        return billing.update_payment(con, hotel, month, paid_amount, data_layer.now_utc())


# ---------------------------------------------------------------------------
# Confirmations
# ---------------------------------------------------------------------------

def confirm_dispatch_record(record_id: str, actor: Actor) -> DispatchRecord:
    with connection() as con:
        hotel = data_layer.fetch_hotel(con, actor.hotel_id) if actor.hotel_id else None
        return confirmation.confirm_dispatch_record(
            con, record_id, actor, hotel.hotel_name if hotel else None, data_layer.now_utc()
        )


def list_requests(actor: Actor) -> list[PickupDeliveryRequest]:
    with connection() as con:
        return confirmation.list_requests(con, actor)


def create_request(actor: Actor, request_type, notes: Optional[str] = None) -> PickupDeliveryRequest:
    with connection() as con:
        _actor_hotel(con, actor)
        return confirmation.create_request(con, actor, request_type, notes, data_layer.now_utc())


def update_request(
    request_id: str, actor: Actor, request_type, notes: Optional[str] = None
) -> PickupDeliveryRequest:
    with connection() as con:
        return confirmation.update_request(con, request_id, actor, request_type, notes)


def delete_request(request_id: str, actor: Actor) -> None:
    with connection() as con:
        confirmation.delete_request(con, request_id, actor)


def confirm_request(request_id: str, actor: Actor) -> PickupDeliveryRequest:
    with connection() as con:
        return confirmation.confirm_request(con, request_id, actor, data_layer.now_utc())


def complete_request(request_id: str, actor: Actor) -> PickupDeliveryRequest:
    with connection() as con:
        return confirmation.complete_request(con, request_id, actor, data_layer.now_utc())


def hide_request(request_id: str, actor: Actor) -> None:
    with connection() as con:
        confirmation.hide_request(con, request_id, actor)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def get_statistics(view, year=None) -> list[PeriodStat]:
    with connection() as con:
        return reporting.get_statistics(con, view, year)


def compare_statistics(period1: str, period2: str, view) -> list[PeriodStat]:
    with connection() as con:
        return reporting.compare_statistics(con, period1, period2, view)
