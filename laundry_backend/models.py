"""
Dataclasses mirroring the sqlite schema in ``services.data_layer``.

Rows are read with ``sqlite3.Row`` and converted with ``from_row``; bulk
reads used by the aggregators stay as pandas frames instead.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    MANAGER_ASSISTANT = "MANAGER_ASSISTANT"
    TENANT = "TENANT"


class HotelType(str, Enum):
    PHYSICAL = "PHYSICAL"
    LEGAL = "LEGAL"


class DispatchKind(str, Enum):
    ITEMIZED = "ITEMIZED"
    FLAT_RATE = "FLAT_RATE"


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class BillingStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class SalaryStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class RequestType(str, Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"
    BOTH = "BOTH"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"


# Allowed pickup/delivery transitions; COMPLETED is terminal.
REQUEST_TRANSITIONS: dict[RequestStatus, RequestStatus] = {
    RequestStatus.PENDING: RequestStatus.CONFIRMED,
    RequestStatus.CONFIRMED: RequestStatus.COMPLETED,
}


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class Actor:
    """Caller identity handed over by the auth layer."""
    user_id: str
    role: Role
    hotel_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass
class Hotel:
    id: str
    hotel_name: str
    type: HotelType
    user_id: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Hotel":
        return cls(
            id=row["id"],
            hotel_name=row["hotel_name"],
            type=HotelType(row["type"]),
            user_id=row["user_id"],
        )


@dataclass
class DispatchItem:
    category: str
    unit_weight: float = 0.0
    unit_price: float = 0.0
    received_qty: int = 0
    wash_count: int = 0
    dispatched_qty: int = 0
    shortage_qty: int = 0

    @classmethod
    def from_row(cls, row) -> "DispatchItem":
        return cls(
            category=row["category"],
            unit_weight=row["unit_weight"] or 0.0,
            unit_price=row["unit_price"] or 0.0,
            received_qty=row["received_qty"] or 0,
            wash_count=row["wash_count"] or 0,
            dispatched_qty=row["dispatched_qty"] or 0,
            shortage_qty=row["shortage_qty"] or 0,
        )


@dataclass
class DispatchRecord:
    """One day's processing sheet for one hotel."""
    id: str
    date: datetime
    hotel_name: str
    kind: DispatchKind
    total_weight: float = 0.0
    price_per_kg: float = 0.0
    flat_total_price: Optional[float] = None
    confirmed_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    items: list[DispatchItem] = field(default_factory=list)

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed_at is not None

    @classmethod
    def from_row(cls, row, items: list[DispatchItem] | None = None) -> "DispatchRecord":
        return cls(
            id=row["id"],
            date=parse_timestamp(row["date"]),
            hotel_name=row["hotel_name"],
            kind=DispatchKind(row["kind"]),
            total_weight=row["total_weight"] or 0.0,
            price_per_kg=row["price_per_kg"] or 0.0,
            flat_total_price=row["flat_total_price"],
            confirmed_by=row["confirmed_by"],
            confirmed_at=parse_timestamp(row["confirmed_at"]),
            items=items or [],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EmailSend:
    """Snapshot of a billed amount taken when a dispatch summary was sent.

    ``dispatch_record_id`` is a lookup hint only; the record it names may
    have been edited or deleted since.
    """
    id: str
    hotel_name: str
    date: datetime
    total_amount: float
    total_weight: float
    protectors_amount: float
    sent_at: datetime
    confirmed_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    dispatch_record_id: Optional[str] = None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed_at is not None

    @classmethod
    def from_row(cls, row) -> "EmailSend":
        return cls(
            id=row["id"],
            hotel_name=row["hotel_name"],
            date=parse_timestamp(row["date"]),
            total_amount=row["total_amount"] or 0.0,
            total_weight=row["total_weight"] or 0.0,
            protectors_amount=row["protectors_amount"] or 0.0,
            sent_at=parse_timestamp(row["sent_at"]),
            confirmed_by=row["confirmed_by"],
            confirmed_at=parse_timestamp(row["confirmed_at"]),
            dispatch_record_id=row["dispatch_record_id"],
        )


@dataclass
class Invoice:
    id: str
    customer_name: str
    amount: float
    total_weight_kg: float = 0.0
    protectors_amount: float = 0.0
    status: InvoiceStatus = InvoiceStatus.PENDING
    paid_amount: float = 0.0
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Invoice":
        return cls(
            id=row["id"],
            customer_name=row["customer_name"],
            amount=row["amount"] or 0.0,
            total_weight_kg=row["total_weight_kg"] or 0.0,
            protectors_amount=row["protectors_amount"] or 0.0,
            status=InvoiceStatus(row["status"] or InvoiceStatus.PENDING.value),
            paid_amount=row["paid_amount"] or 0.0,
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass
class PaymentRecord:
    hotel_user_id: str
    month: str
    paid_amount: float
    is_paid: bool
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "PaymentRecord":
        return cls(
            hotel_user_id=row["hotel_user_id"],
            month=row["month"],
            paid_amount=row["paid_amount"] or 0.0,
            is_paid=bool(row["is_paid"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PickupDeliveryRequest:
    id: str
    hotel_id: str
    user_id: str
    request_type: RequestType
    status: RequestStatus = RequestStatus.PENDING
    notes: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    hidden_from_admin: bool = False
    hidden_from_manager: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "PickupDeliveryRequest":
        return cls(
            id=row["id"],
            hotel_id=row["hotel_id"],
            user_id=row["user_id"],
            request_type=RequestType(row["request_type"]),
            status=RequestStatus(row["status"]),
            notes=row["notes"],
            confirmed_at=parse_timestamp(row["confirmed_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            hidden_from_admin=bool(row["hidden_from_admin"]),
            hidden_from_manager=bool(row["hidden_from_manager"]),
            created_at=parse_timestamp(row["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class InvoiceDetail:
    """One visible row of a monthly breakdown; resends collapse into ``send_count``."""
    date: str
    amount: float
    weight_kg: float
    protectors_amount: float
    sent_at: Optional[datetime]
    send_count: int = 1
    email_send_ids: list[str] = field(default_factory=list)
    confirmed_at: Optional[datetime] = None


@dataclass
class MonthlyInvoiceSummary:
    month: str
    total_amount: float
    paid_amount: float
    remaining_amount: float
    status: BillingStatus
    is_paid: bool = False
    invoice_details: list[InvoiceDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PeriodStat:
    period: str
    revenues: float
    expenses: float
    salaries: float
    net_income: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MatchResult:
    confirmed_count: int
    strategy: str
    email_send_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
