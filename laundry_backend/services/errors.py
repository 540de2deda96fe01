from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    ALREADY_CONFIRMED = "already_confirmed"
    INVALID_INPUT = "invalid_input"
    CONFLICT = "conflict"
    STORAGE = "storage"


class BillingError(Exception):
    """Base class for every failure that leaves the service layer.

    ``kind`` is the stable discriminant callers branch on, ``code`` an
    optional finer-grained reason (e.g. ``invoice_not_found`` versus
    ``no_matching_sends``) and ``message`` the human-readable text.
    """

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.kind.value

    def to_dict(self) -> dict:
        return {"error": self.kind.value, "code": self.code, "detail": self.message}


class NotFound(BillingError):
    kind = ErrorKind.NOT_FOUND


class Forbidden(BillingError):
    kind = ErrorKind.FORBIDDEN


class AlreadyConfirmed(BillingError):
    kind = ErrorKind.ALREADY_CONFIRMED


class InvalidInput(BillingError):
    kind = ErrorKind.INVALID_INPUT


class Conflict(AlreadyConfirmed):
    # A conditional update touched zero rows after the pre-check passed:
    # another request confirmed the same rows first.
    kind = ErrorKind.CONFLICT


class StorageError(BillingError):
    kind = ErrorKind.STORAGE
