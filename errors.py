"""Error taxonomy for the token ledger.

Every rejection carries a stable ``kind`` plus structured ``details`` so the
HTTP layer can render a specific message (current count, cap, days remaining,
...). ``status_code`` is the HTTP status the API answers with.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal


def _jsonable(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class LedgerError(Exception):
    kind = "LedgerError"
    status_code = 400

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details

    def to_dict(self) -> dict:
        payload = {"success": False, "error": self.kind, "message": self.message}
        for key, value in self.details.items():
            payload[key] = _jsonable(value)
        return payload


class UnknownAction(LedgerError):
    kind = "UnknownAction"


class DailyLimitExceeded(LedgerError):
    kind = "DailyLimitExceeded"
    status_code = 429


class InvalidAmount(LedgerError):
    kind = "InvalidAmount"


class OutOfRange(LedgerError):
    kind = "OutOfRange"


class InvalidPeriod(LedgerError):
    kind = "InvalidPeriod"


class InsufficientBalance(LedgerError):
    kind = "InsufficientBalance"


class StakeAlreadyActive(LedgerError):
    kind = "StakeAlreadyActive"
    status_code = 409


class StakeNotMatured(LedgerError):
    kind = "StakeNotMatured"
    status_code = 409


class NotFound(LedgerError):
    kind = "NotFound"
    status_code = 404


class PersistenceFailure(LedgerError):
    """The store failed after validation passed; nothing was applied."""

    kind = "PersistenceFailure"
    status_code = 503


class Unauthenticated(LedgerError):
    kind = "Unauthenticated"
    status_code = 401


class LedgerImmutableError(RuntimeError):
    """Raised when code tries to update or delete a ledger row."""


class InvalidAccount(LedgerError):
    kind = "InvalidAccount"
