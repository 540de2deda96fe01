from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from laundry_backend import core
from laundry_backend.config import get_settings
from laundry_backend.models import Actor, Role
from laundry_backend.services import data_layer
from laundry_backend.services.errors import BillingError, ErrorKind, Forbidden, InvalidInput
from laundry_backend.services.reconciliation import InvoiceSelector

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(
    title="Laundry billing backend",
    version="1.0.0",
    description="Invoice reconciliation, monthly billing and statistics for the laundry service",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.ALREADY_CONFIRMED: 409,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STORAGE: 503,
}


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    status = STATUS_BY_KIND.get(exc.kind, 400)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


def get_actor(
    x_user_id: str = Header(...),
    x_user_role: str = Header(...),
    x_hotel_id: Optional[str] = Header(default=None),
) -> Actor:
    try:
        role = Role(x_user_role.upper())
    except ValueError as exc:
        raise InvalidInput(f"unknown role {x_user_role!r}", code="bad_role") from exc
    return Actor(user_id=x_user_id, role=role, hotel_id=x_hotel_id or None)


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise Forbidden("admin role required")
    return actor


@app.get("/healthz")
def healthcheck():
    return core.health()


@app.post("/data/upload/{dataset}")
async def upload_csv(
    dataset: data_layer.Dataset,
    file: UploadFile = File(...),
    actor: Actor = Depends(require_admin),
):
    content = await file.read()
    rows = core.import_dataset(dataset, content)
    return {"dataset": dataset, "rows": rows}


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class MatchRequest(BaseModel):
    invoice_id: Optional[str] = None
    email_send_ids: List[str] = Field(default_factory=list)
    date: Optional[str] = None
    month: Optional[str] = None
    amount: Optional[float] = None
    weight_kg: Optional[float] = None
    protectors_amount: Optional[float] = None


class MonthRequest(BaseModel):
    month: str


@app.post("/invoices/match")
def match_invoice(payload: MatchRequest, actor: Actor = Depends(get_actor)):
    selector = InvoiceSelector(**payload.model_dump())
    return core.match_invoice(selector, actor).to_dict()


@app.post("/invoices/confirm-month")
def confirm_month(payload: MonthRequest, actor: Actor = Depends(get_actor)):
    return core.confirm_month(payload.month, actor).to_dict()


@app.get("/hotels/{hotel_id}/invoices")
def hotel_invoices(hotel_id: str, month: Optional[str] = None, actor: Actor = Depends(get_actor)):
    return {"rows": core.list_hotel_invoices(hotel_id, month, actor)}


@app.get("/hotels/{hotel_id}/monthly-invoices")
def monthly_invoices(hotel_id: str, month: Optional[str] = None, actor: Actor = Depends(get_actor)):
    summaries = core.get_monthly_invoices(hotel_id, month, actor)
    return {"months": [s.to_dict() for s in summaries]}


class PaymentRequest(BaseModel):
    month: str
    paid_amount: float


@app.put("/hotels/{hotel_id}/payments")
def update_payment(hotel_id: str, payload: PaymentRequest, actor: Actor = Depends(get_actor)):
    record = core.update_payment(hotel_id, payload.month, payload.paid_amount, actor)
    return record.to_dict()


@app.put("/dispatch-records/{record_id}/confirm")
def confirm_dispatch_record(record_id: str, actor: Actor = Depends(get_actor)):
    return core.confirm_dispatch_record(record_id, actor).to_dict()


# ---------------------------------------------------------------------------
# Pickup / delivery requests
# ---------------------------------------------------------------------------

class RequestPayload(BaseModel):
    request_type: str
    notes: Optional[str] = None


@app.get("/pickup-delivery")
def list_requests(actor: Actor = Depends(get_actor)):
    return {"rows": [r.to_dict() for r in core.list_requests(actor)]}


@app.post("/pickup-delivery")
def create_request(payload: RequestPayload, actor: Actor = Depends(get_actor)):
    return core.create_request(actor, payload.request_type, payload.notes).to_dict()


@app.put("/pickup-delivery/{request_id}")
def update_request(request_id: str, payload: RequestPayload, actor: Actor = Depends(get_actor)):
    return core.update_request(request_id, actor, payload.request_type, payload.notes).to_dict()


@app.delete("/pickup-delivery/{request_id}")
def delete_request(request_id: str, actor: Actor = Depends(get_actor)):
    core.delete_request(request_id, actor)
    return {"status": "ok"}


@app.put("/pickup-delivery/{request_id}/confirm")
def confirm_request(request_id: str, actor: Actor = Depends(get_actor)):
    return core.confirm_request(request_id, actor).to_dict()


@app.put("/pickup-delivery/{request_id}/complete")
def complete_request(request_id: str, actor: Actor = Depends(get_actor)):
    return core.complete_request(request_id, actor).to_dict()


@app.put("/pickup-delivery/{request_id}/hide")
def hide_request(request_id: str, actor: Actor = Depends(get_actor)):
    core.hide_request(request_id, actor)
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Statistics (admin only)
# ---------------------------------------------------------------------------

@app.get("/statistics")
def statistics(view: str = "monthly", year: Optional[str] = None, actor: Actor = Depends(require_admin)):
    return {"view": view, "rows": [s.to_dict() for s in core.get_statistics(view, year)]}


@app.get("/statistics/compare")
def compare(period1: str, period2: str, view: str = "monthly", actor: Actor = Depends(require_admin)):
    rows = core.compare_statistics(period1, period2, view)
    return {"view": view, "rows": [s.to_dict() for s in rows]}
