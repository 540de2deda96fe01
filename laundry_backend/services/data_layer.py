from __future__ import annotations

import io
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Literal, Optional, Sequence

import pandas as pd

from laundry_backend.config import get_settings
from laundry_backend.models import (
    DispatchItem,
    DispatchRecord,
    EmailSend,
    Hotel,
    Invoice,
    PaymentRecord,
    PickupDeliveryRequest,
)

from .errors import BillingError, Conflict, InvalidInput, StorageError

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
DB_PATH = BASE_DIR / "laundry.db"

# Every timestamp is written in this shape (naive UTC) so that SQL range
# filters on the TEXT columns compare correctly.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS hotels (
    id              TEXT PRIMARY KEY,
    hotel_name      TEXT NOT NULL,
    type            TEXT NOT NULL DEFAULT 'PHYSICAL',
    user_id         TEXT
);

CREATE TABLE IF NOT EXISTS dispatch_records (
    id                  TEXT PRIMARY KEY,
    date                TEXT NOT NULL,
    hotel_name          TEXT,
    kind                TEXT NOT NULL DEFAULT 'ITEMIZED',
    total_weight        REAL NOT NULL DEFAULT 0,
    price_per_kg        REAL NOT NULL DEFAULT 0,
    flat_total_price    REAL,
    confirmed_by        TEXT,
    confirmed_at        TEXT
);

CREATE TABLE IF NOT EXISTS dispatch_items (
    id                  TEXT PRIMARY KEY,
    dispatch_record_id  TEXT NOT NULL REFERENCES dispatch_records(id) ON DELETE CASCADE,
    position            INTEGER NOT NULL DEFAULT 0,
    category            TEXT NOT NULL DEFAULT '',
    unit_weight         REAL NOT NULL DEFAULT 0,
    unit_price          REAL NOT NULL DEFAULT 0,
    received_qty        INTEGER NOT NULL DEFAULT 0,
    wash_count          INTEGER NOT NULL DEFAULT 0,
    dispatched_qty      INTEGER NOT NULL DEFAULT 0,
    shortage_qty        INTEGER NOT NULL DEFAULT 0
);

-- dispatch_record_id is a lookup hint only; the record may be gone.
CREATE TABLE IF NOT EXISTS email_sends (
    id                  TEXT PRIMARY KEY,
    hotel_name          TEXT,
    date                TEXT NOT NULL,
    total_amount        REAL NOT NULL DEFAULT 0,
    total_weight        REAL NOT NULL DEFAULT 0,
    protectors_amount   REAL NOT NULL DEFAULT 0,
    sent_at             TEXT NOT NULL,
    confirmed_by        TEXT,
    confirmed_at        TEXT,
    dispatch_record_id  TEXT
);
CREATE INDEX IF NOT EXISTS idx_email_sends_date ON email_sends(date);

CREATE TABLE IF NOT EXISTS invoices (
    id                  TEXT PRIMARY KEY,
    customer_name       TEXT NOT NULL,
    amount              REAL NOT NULL DEFAULT 0,
    total_weight_kg     REAL NOT NULL DEFAULT 0,
    protectors_amount   REAL NOT NULL DEFAULT 0,
    status              TEXT NOT NULL DEFAULT 'PENDING',
    paid_amount         REAL NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_invoices_created_at ON invoices(created_at);

CREATE TABLE IF NOT EXISTS payment_records (
    id                  TEXT PRIMARY KEY,
    hotel_user_id       TEXT NOT NULL,
    month               TEXT NOT NULL,
    paid_amount         REAL NOT NULL DEFAULT 0,
    is_paid             INTEGER NOT NULL DEFAULT 0,
    updated_at          TEXT,
    UNIQUE (hotel_user_id, month)
);

CREATE TABLE IF NOT EXISTS revenues (
    id                  TEXT PRIMARY KEY,
    amount              REAL NOT NULL DEFAULT 0,
    date                TEXT NOT NULL,
    source              TEXT,
    description         TEXT
);

CREATE TABLE IF NOT EXISTS expenses (
    id                  TEXT PRIMARY KEY,
    amount              REAL NOT NULL DEFAULT 0,
    date                TEXT NOT NULL,
    category            TEXT,
    description         TEXT
);

CREATE TABLE IF NOT EXISTS salaries (
    id                  TEXT PRIMARY KEY,
    employee_name       TEXT,
    amount              REAL NOT NULL DEFAULT 0,
    month               INTEGER NOT NULL,
    year                INTEGER NOT NULL,
    status              TEXT NOT NULL DEFAULT 'PENDING'
);

CREATE TABLE IF NOT EXISTS pickup_delivery_requests (
    id                  TEXT PRIMARY KEY,
    hotel_id            TEXT NOT NULL,
    user_id             TEXT NOT NULL,
    request_type        TEXT NOT NULL,
    notes               TEXT,
    status              TEXT NOT NULL DEFAULT 'PENDING',
    confirmed_at        TEXT,
    completed_at        TEXT,
    hidden_from_admin   INTEGER NOT NULL DEFAULT 0,
    hidden_from_manager INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT
);
"""

DATE_COLUMNS: dict[str, tuple[str, ...]] = {
    "hotels": (),
    "dispatch_records": ("date", "confirmed_at"),
    "dispatch_items": (),
    "email_sends": ("date", "sent_at", "confirmed_at"),
    "invoices": ("created_at",),
    "payment_records": ("updated_at",),
    "revenues": ("date",),
    "expenses": ("date",),
    "salaries": (),
    "pickup_delivery_requests": ("confirmed_at", "completed_at", "created_at"),
}

REQUIRED_COLUMNS: dict[str, tuple[str, ...]] = {
    "hotels": ("hotel_name",),
    "dispatch_records": ("date", "hotel_name"),
    "dispatch_items": ("dispatch_record_id",),
    "email_sends": ("hotel_name", "date", "total_amount", "sent_at"),
    "invoices": ("customer_name", "amount", "created_at"),
    "revenues": ("amount", "date"),
    "expenses": ("amount", "date"),
    "salaries": ("amount", "month", "year"),
    "pickup_delivery_requests": ("hotel_id", "user_id", "request_type"),
}

# Identifier columns stay text even when a CSV carries numeric ids.
KEY_COLUMNS = ("id", "dispatch_record_id", "hotel_id", "user_id", "hotel_user_id")

Dataset = Literal[
    "hotels",
    "dispatch_records",
    "dispatch_items",
    "email_sends",
    "invoices",
    "revenues",
    "expenses",
    "salaries",
    "pickup_delivery_requests",
]


# ---------------------------------------------------------------------------
# Connections and error wrapping
# ---------------------------------------------------------------------------

def _db_path() -> Path:
    return get_settings().database_path or DB_PATH


def get_connection(path: Optional[Path] = None) -> sqlite3.Connection:
    db_path = Path(path or _db_path())
    db_path.parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(db_path, timeout=5.0)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys=ON")
    return con


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """Re-raise driver errors as BillingError subclasses."""
    try:
        yield
    except BillingError:
        raise
    except sqlite3.IntegrityError as exc:
        logger.error("%s violated a constraint: %s", action, exc)
        raise Conflict(f"{action} conflicts with existing data", code="integrity") from exc
    except (sqlite3.Error, pd.errors.DatabaseError) as exc:
        logger.error("%s failed: %s", action, exc)
        raise StorageError(f"{action} failed", code="storage_unavailable") from exc


@contextmanager
def transaction(con: sqlite3.Connection, action: str = "transaction") -> Iterator[sqlite3.Connection]:
    """Run the block inside one write transaction; roll back on any error."""
    with storage_errors(action):
        con.execute("BEGIN IMMEDIATE")
        try:
            yield con
        except BaseException:
            con.rollback()
            raise
        else:
            con.commit()


def init_db(con: sqlite3.Connection) -> None:
    with storage_errors("schema init"):
        con.executescript(_SCHEMA_SQL)
    logger.debug("Database schema ready")


def list_tables(con: sqlite3.Connection) -> list[str]:
    with storage_errors("list tables"):
        cur = con.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )
        return [row[0] for row in cur.fetchall()]


def db_has_data(con: sqlite3.Connection) -> bool:
    tables = set(list_tables(con))
    if "email_sends" not in tables:
        return False
    with storage_errors("count email sends"):
        return con.execute("SELECT COUNT(*) FROM email_sends").fetchone()[0] > 0


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def to_iso(value) -> Optional[str]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts.strftime(TIMESTAMP_FORMAT)


# ---------------------------------------------------------------------------
# Frame loaders (aggregators work on these)
# ---------------------------------------------------------------------------

def _normalize_dates(df: pd.DataFrame, columns: Iterable[str]) -> pd.DataFrame:
    for col in columns:
        if col in df.columns:
            df[col] = pd.to_datetime(df[col], format="ISO8601")
    return df


def load_frame(
    con: sqlite3.Connection,
    table: Dataset | Literal["payment_records"],
    where: str = "",
    params: Sequence = (),
) -> pd.DataFrame:
    if table not in DATE_COLUMNS:
        raise ValueError(f"Unknown table {table!r}")
    sql = f"SELECT * FROM {table}"
    if where:
        sql += f" WHERE {where}"
    with storage_errors(f"load {table}"):
        df = pd.read_sql_query(sql, con, params=list(params))
    return _normalize_dates(df, DATE_COLUMNS[table])


def load_email_sends(
    con: sqlite3.Connection,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> pd.DataFrame:
    clauses, params = ["hotel_name IS NOT NULL"], []
    if start is not None:
        clauses.append("date >= ?")
        params.append(to_iso(start))
    if end is not None:
        clauses.append("date < ?")
        params.append(to_iso(end))
    return load_frame(con, "email_sends", " AND ".join(clauses), params)


def load_email_sends_by_ids(con: sqlite3.Connection, ids: Sequence[str]) -> pd.DataFrame:
    if not ids:
        return load_frame(con, "email_sends", "0")
    placeholders = ",".join("?" for _ in ids)
    return load_frame(
        con, "email_sends", f"id IN ({placeholders}) AND hotel_name IS NOT NULL", list(ids)
    )


def load_payments(con: sqlite3.Connection, hotel_user_id: Optional[str]) -> pd.DataFrame:
    if not hotel_user_id:
        return load_frame(con, "payment_records", "0")
    return load_frame(con, "payment_records", "hotel_user_id = ?", [hotel_user_id])


# ---------------------------------------------------------------------------
# Single-row fetches
# ---------------------------------------------------------------------------

def _fetch_row(con: sqlite3.Connection, table: str, row_id: str) -> Optional[sqlite3.Row]:
    if table not in DATE_COLUMNS:
        raise ValueError(f"Unknown table {table!r}")
    with storage_errors(f"fetch {table}"):
        return con.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()


def fetch_hotel(con: sqlite3.Connection, hotel_id: str) -> Optional[Hotel]:
    row = _fetch_row(con, "hotels", hotel_id)
    return Hotel.from_row(row) if row else None


def fetch_invoice(con: sqlite3.Connection, invoice_id: str) -> Optional[Invoice]:
    row = _fetch_row(con, "invoices", invoice_id)
    return Invoice.from_row(row) if row else None


def fetch_email_send(con: sqlite3.Connection, send_id: str) -> Optional[EmailSend]:
    row = _fetch_row(con, "email_sends", send_id)
    return EmailSend.from_row(row) if row else None


def fetch_dispatch_record(con: sqlite3.Connection, record_id: str) -> Optional[DispatchRecord]:
    row = _fetch_row(con, "dispatch_records", record_id)
    if row is None:
        return None
    with storage_errors("fetch dispatch items"):
        items = con.execute(
            "SELECT * FROM dispatch_items WHERE dispatch_record_id = ? ORDER BY position, id",
            (record_id,),
        ).fetchall()
    return DispatchRecord.from_row(row, [DispatchItem.from_row(i) for i in items])


def fetch_request(con: sqlite3.Connection, request_id: str) -> Optional[PickupDeliveryRequest]:
    row = _fetch_row(con, "pickup_delivery_requests", request_id)
    return PickupDeliveryRequest.from_row(row) if row else None


def list_requests(
    con: sqlite3.Connection, where: str, params: Sequence = ()
) -> list[PickupDeliveryRequest]:
    with storage_errors("list pickup/delivery requests"):
        rows = con.execute(
            f"SELECT * FROM pickup_delivery_requests WHERE {where} "
            "ORDER BY created_at DESC, id",
            list(params),
        ).fetchall()
    return [PickupDeliveryRequest.from_row(r) for r in rows]


def fetch_payment(con: sqlite3.Connection, hotel_user_id: str, month: str) -> Optional[PaymentRecord]:
    with storage_errors("fetch payment"):
        row = con.execute(
            "SELECT * FROM payment_records WHERE hotel_user_id = ? AND month = ?",
            (hotel_user_id, month),
        ).fetchone()
    return PaymentRecord.from_row(row) if row else None


# ---------------------------------------------------------------------------
# Conditional writes
# ---------------------------------------------------------------------------

def confirm_email_sends(
    con: sqlite3.Connection, ids: Sequence[str], confirmed_by: str, confirmed_at: datetime
) -> int:
    """Stamp unconfirmed sends; returns how many rows this call confirmed.

    Must run inside ``transaction``.
    """
    if not ids:
        return 0
    placeholders = ",".join("?" for _ in ids)
    cur = con.execute(
        f"UPDATE email_sends SET confirmed_by = ?, confirmed_at = ? "
        f"WHERE id IN ({placeholders}) AND confirmed_at IS NULL",
        [confirmed_by, to_iso(confirmed_at), *ids],
    )
    return cur.rowcount


def stamped_email_send_ids(
    con: sqlite3.Connection, ids: Sequence[str], confirmed_by: str, confirmed_at: datetime
) -> list[str]:
    """Ids among ``ids`` that carry exactly this confirmation stamp."""
    if not ids:
        return []
    placeholders = ",".join("?" for _ in ids)
    cur = con.execute(
        f"SELECT id FROM email_sends WHERE id IN ({placeholders}) "
        "AND confirmed_by = ? AND confirmed_at = ? ORDER BY date, id",
        [*ids, confirmed_by, to_iso(confirmed_at)],
    )
    return [row[0] for row in cur.fetchall()]


def confirm_dispatch_record(
    con: sqlite3.Connection, record_id: str, confirmed_by: str, confirmed_at: datetime
) -> int:
    cur = con.execute(
        "UPDATE dispatch_records SET confirmed_by = ?, confirmed_at = ? "
        "WHERE id = ? AND confirmed_at IS NULL",
        (confirmed_by, to_iso(confirmed_at), record_id),
    )
    return cur.rowcount


def upsert_payment(
    con: sqlite3.Connection,
    hotel_user_id: str,
    month: str,
    paid_amount: float,
    is_paid: bool,
    updated_at: datetime,
) -> None:
    con.execute(
        """
        INSERT INTO payment_records (id, hotel_user_id, month, paid_amount, is_paid, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT (hotel_user_id, month) DO UPDATE SET
            paid_amount = excluded.paid_amount,
            is_paid = excluded.is_paid,
            updated_at = excluded.updated_at
        """,
        (uuid.uuid4().hex, hotel_user_id, month, paid_amount, int(is_paid), to_iso(updated_at)),
    )


def insert_request(
    con: sqlite3.Connection,
    request_id: str,
    hotel_id: str,
    user_id: str,
    request_type: str,
    notes: Optional[str],
    created_at: datetime,
) -> None:
    con.execute(
        "INSERT INTO pickup_delivery_requests (id, hotel_id, user_id, request_type, notes, status, created_at) "
        "VALUES (?, ?, ?, ?, ?, 'PENDING', ?)",
        (request_id, hotel_id, user_id, request_type, notes, to_iso(created_at)),
    )


def transition_request(
    con: sqlite3.Connection,
    request_id: str,
    from_status: str,
    to_status: str,
    stamp_column: str,
    stamped_at: datetime,
) -> int:
    if stamp_column not in ("confirmed_at", "completed_at"):
        raise ValueError(f"Unknown stamp column {stamp_column!r}")
    cur = con.execute(
        f"UPDATE pickup_delivery_requests SET status = ?, {stamp_column} = ? "
        f"WHERE id = ? AND status = ?",
        (to_status, to_iso(stamped_at), request_id, from_status),
    )
    return cur.rowcount


def update_pending_request(
    con: sqlite3.Connection, request_id: str, request_type: str, notes: Optional[str]
) -> int:
    cur = con.execute(
        "UPDATE pickup_delivery_requests SET request_type = ?, notes = ? "
        "WHERE id = ? AND status = 'PENDING'",
        (request_type, notes, request_id),
    )
    return cur.rowcount


def delete_pending_request(con: sqlite3.Connection, request_id: str) -> int:
    cur = con.execute(
        "DELETE FROM pickup_delivery_requests WHERE id = ? AND status = 'PENDING'",
        (request_id,),
    )
    return cur.rowcount


def hide_request(con: sqlite3.Connection, request_id: str, flag_column: str) -> int:
    if flag_column not in ("hidden_from_admin", "hidden_from_manager"):
        raise ValueError(f"Unknown visibility flag {flag_column!r}")
    cur = con.execute(
        f"UPDATE pickup_delivery_requests SET {flag_column} = 1 WHERE id = ?",
        (request_id,),
    )
    return cur.rowcount


# ---------------------------------------------------------------------------
# Bulk imports (seeding and CSV upload)
# ---------------------------------------------------------------------------

def _table_info(con: sqlite3.Connection, table: str) -> list[sqlite3.Row]:
    with storage_errors(f"describe {table}"):
        return con.execute(f"PRAGMA table_info({table})").fetchall()


def _column_defaults(info: list[sqlite3.Row]) -> dict[str, object]:
    # NOT NULL columns with a declared default; blank cells fall back to it.
    defaults = {}
    for col in info:
        default = col["dflt_value"]
        if not col["notnull"] or default is None:
            continue
        defaults[col["name"]] = default.strip("'") if default.startswith("'") else float(default)
    return defaults


def _key_text(value) -> Optional[str]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip() or None


def append_rows(con: sqlite3.Connection, table: Dataset, rows: pd.DataFrame) -> int:
    if table not in DATE_COLUMNS:
        raise ValueError(f"Unknown table {table!r}")
    if rows.empty:
        return 0
    rows = rows.copy()
    info = _table_info(con, table)
    columns = [col["name"] for col in info]
    unknown = [c for c in rows.columns if c not in columns]
    if unknown:
        logger.warning("Dropping unknown %s columns: %s", table, ", ".join(unknown))
        rows = rows.drop(columns=unknown)
    defaults = {k: v for k, v in _column_defaults(info).items() if k in rows.columns}
    if defaults:
        rows = rows.fillna(defaults)
    for col in KEY_COLUMNS:
        if col in rows.columns:
            rows[col] = [_key_text(v) for v in rows[col]]
    if "id" not in rows.columns:
        rows["id"] = [uuid.uuid4().hex for _ in range(len(rows))]
    else:
        rows["id"] = [v or uuid.uuid4().hex for v in rows["id"]]
    for col in DATE_COLUMNS[table]:
        if col in rows.columns:
            rows[col] = [to_iso(v) for v in rows[col]]
    with storage_errors(f"append {table}"):
        with con:
            rows.to_sql(table, con, if_exists="append", index=False)
    logger.info("Appended %d rows to %s", len(rows), table)
    return len(rows)


def import_csv(con: sqlite3.Connection, dataset: Dataset, file_bytes: bytes) -> int:
    try:
        header = pd.read_csv(io.BytesIO(file_bytes), nrows=0)
        keys = {c: str for c in header.columns if c in KEY_COLUMNS}
        df = pd.read_csv(io.BytesIO(file_bytes), dtype=keys)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        raise InvalidInput(f"could not parse CSV: {exc}", code="bad_csv") from exc
    missing = [c for c in REQUIRED_COLUMNS.get(dataset, ()) if c not in df.columns]
    if missing:
        raise InvalidInput(f"{dataset} CSV is missing columns: {', '.join(missing)}", code="bad_csv")
    return append_rows(con, dataset, df)
