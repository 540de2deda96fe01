"""
Confirmation state machines.

Three independent machines live here or are driven from here:

    dispatch record     UNCONFIRMED -> CONFIRMED
    email send          UNCONFIRMED -> CONFIRMED   (bulk, see reconciliation)
    pickup/delivery     PENDING -> CONFIRMED -> COMPLETED

Confirming a dispatch record never touches its email sends and vice versa.
Every transition is a conditional UPDATE; a zero row count after a passing
pre-check means another request won the race.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Optional

from laundry_backend.models import (
    REQUEST_TRANSITIONS,
    Actor,
    DispatchRecord,
    PickupDeliveryRequest,
    RequestStatus,
    RequestType,
    Role,
)

from . import data_layer
from .common import normalize_hotel_name
from .errors import AlreadyConfirmed, Conflict, Forbidden, InvalidInput, NotFound

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dispatch records
# ---------------------------------------------------------------------------

def confirm_dispatch_record(
    con: sqlite3.Connection,
    record_id: str,
    actor: Actor,
    hotel_name: Optional[str],
    confirmed_at: datetime,
) -> DispatchRecord:
    record = data_layer.fetch_dispatch_record(con, record_id)
    if record is None:
        raise NotFound(f"dispatch record {record_id} not found", code="dispatch_record_not_found")
    if not hotel_name or normalize_hotel_name(record.hotel_name) != normalize_hotel_name(hotel_name):
        logger.warning("User %s may not confirm dispatch record %s", actor.user_id, record_id)
        raise Forbidden("dispatch record belongs to another hotel")
    if record.is_confirmed:
        raise AlreadyConfirmed(f"dispatch record {record_id} is already confirmed")

    with data_layer.transaction(con, "confirm dispatch record"):
        if data_layer.confirm_dispatch_record(con, record_id, actor.user_id, confirmed_at) == 0:
            raise Conflict(f"dispatch record {record_id} was confirmed concurrently")

    logger.info("Dispatch record %s confirmed by %s", record_id, actor.user_id)
    return data_layer.fetch_dispatch_record(con, record_id)


# ---------------------------------------------------------------------------
# Pickup / delivery requests
# ---------------------------------------------------------------------------

_VISIBILITY_FLAGS = {
    Role.ADMIN: "hidden_from_admin",
    Role.MANAGER: "hidden_from_manager",
    Role.MANAGER_ASSISTANT: "hidden_from_manager",
}


def _get_request(con: sqlite3.Connection, request_id: str) -> PickupDeliveryRequest:
    request = data_layer.fetch_request(con, request_id)
    if request is None:
        raise NotFound(f"request {request_id} not found", code="request_not_found")
    return request


def _require_owner(request: PickupDeliveryRequest, actor: Actor) -> None:
    if actor.role is not Role.TENANT or request.hotel_id != actor.hotel_id or request.user_id != actor.user_id:
        raise Forbidden("only the requesting hotel may change this request")


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise Forbidden("admin role required")


def _parse_request_type(request_type) -> RequestType:
    try:
        return RequestType(str(request_type).upper())
    except ValueError as exc:
        raise InvalidInput(
            "request type must be PICKUP, DELIVERY or BOTH", code="bad_request_type"
        ) from exc


def list_requests(con: sqlite3.Connection, actor: Actor) -> list[PickupDeliveryRequest]:
    """Requests visible to ``actor``; hiding is per role and never deletes."""
    if actor.role is Role.TENANT:
        return data_layer.list_requests(
            con, "hotel_id = ? AND user_id = ?", (actor.hotel_id, actor.user_id)
        )
    return data_layer.list_requests(con, f"{_VISIBILITY_FLAGS[actor.role]} = 0")


def create_request(
    con: sqlite3.Connection,
    actor: Actor,
    request_type,
    notes: Optional[str],
    created_at: datetime,
) -> PickupDeliveryRequest:
    """Open a PENDING request on behalf of the caller's hotel."""
    if actor.role is not Role.TENANT or not actor.hotel_id:
        raise Forbidden("only hotel users can open pickup/delivery requests")
    kind = _parse_request_type(request_type)
    request_id = uuid.uuid4().hex
    with data_layer.transaction(con, "create request"):
        data_layer.insert_request(
            con, request_id, actor.hotel_id, actor.user_id, kind.value, notes or None, created_at
        )
    logger.info("Request %s (%s) opened by %s", request_id, kind.value, actor.user_id)
    return _get_request(con, request_id)


def update_request(
    con: sqlite3.Connection,
    request_id: str,
    actor: Actor,
    request_type,
    notes: Optional[str] = None,
) -> PickupDeliveryRequest:
    kind = _parse_request_type(request_type)
    request = _get_request(con, request_id)
    _require_owner(request, actor)
    if request.status is not RequestStatus.PENDING:
        raise AlreadyConfirmed("only pending requests can be edited", code="request_not_pending")

    with data_layer.transaction(con, "update request"):
        if data_layer.update_pending_request(con, request_id, kind.value, notes or None) == 0:
            raise Conflict(f"request {request_id} left PENDING concurrently")
    return _get_request(con, request_id)


def delete_request(con: sqlite3.Connection, request_id: str, actor: Actor) -> None:
    request = _get_request(con, request_id)
    _require_owner(request, actor)
    if request.status is not RequestStatus.PENDING:
        raise AlreadyConfirmed("only pending requests can be deleted", code="request_not_pending")

    with data_layer.transaction(con, "delete request"):
        if data_layer.delete_pending_request(con, request_id) == 0:
            raise Conflict(f"request {request_id} left PENDING concurrently")
    logger.info("Request %s deleted by %s", request_id, actor.user_id)


def _advance(
    con: sqlite3.Connection,
    request: PickupDeliveryRequest,
    target: RequestStatus,
    stamp_column: str,
    stamped_at: datetime,
) -> PickupDeliveryRequest:
    with data_layer.transaction(con, f"move request to {target.value}"):
        moved = data_layer.transition_request(
            con, request.id, request.status.value, target.value, stamp_column, stamped_at
        )
        if moved == 0:
            raise Conflict(f"request {request.id} changed state concurrently")
    logger.info("Request %s moved %s -> %s", request.id, request.status.value, target.value)
    return _get_request(con, request.id)


def confirm_request(
    con: sqlite3.Connection, request_id: str, actor: Actor, confirmed_at: datetime
) -> PickupDeliveryRequest:
    _require_admin(actor)
    request = _get_request(con, request_id)
    if REQUEST_TRANSITIONS.get(request.status) is not RequestStatus.CONFIRMED:
        raise AlreadyConfirmed(f"request {request_id} is already confirmed")
    return _advance(con, request, RequestStatus.CONFIRMED, "confirmed_at", confirmed_at)


def complete_request(
    con: sqlite3.Connection, request_id: str, actor: Actor, completed_at: datetime
) -> PickupDeliveryRequest:
    _require_admin(actor)
    request = _get_request(con, request_id)
    if request.status is RequestStatus.COMPLETED:
        raise AlreadyConfirmed(f"request {request_id} is already completed", code="request_completed")
    if REQUEST_TRANSITIONS.get(request.status) is not RequestStatus.COMPLETED:
        raise InvalidInput(
            f"request {request_id} must be confirmed before completion", code="request_not_confirmed"
        )
    return _advance(con, request, RequestStatus.COMPLETED, "completed_at", completed_at)


def hide_request(con: sqlite3.Connection, request_id: str, actor: Actor) -> None:
    """Hide a request from the caller's role view only."""
    flag = _VISIBILITY_FLAGS.get(actor.role)
    if flag is None:
        raise Forbidden("only admin and manager views can hide requests")
    _get_request(con, request_id)
    with data_layer.transaction(con, "hide request"):
        data_layer.hide_request(con, request_id, flag)
    logger.info("Request %s hidden (%s) by %s", request_id, flag, actor.user_id)
