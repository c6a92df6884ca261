# Overview: Typed errors raised by the ledger write path and mapped to API responses.

from __future__ import annotations


class LedgerError(ValueError):
    """Base class for every error the ledger surfaces to callers."""

    code = "ledger_error"
    status_code = 400


class ValidationError(LedgerError):
    """400-level input problem. Rejected before any mutation."""

    code = "validation_error"
    status_code = 400


class NonPositiveQuantity(ValidationError):
    code = "non_positive_quantity"


class ConflictError(LedgerError):
    """409-level business rule conflict (e.g., duplicate category name)."""

    code = "conflict"
    status_code = 409


class NotFound(LedgerError):
    """Referenced product, category, stock-in or sale does not exist."""

    code = "not_found"
    status_code = 404


class InsufficientStock(LedgerError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, message: str, *, available: int = 0, requested: int = 0):
        super().__init__(message)
        self.available = available
        self.requested = requested


class ZeroCostSale(LedgerError):
    """Product has no usable average cost; a stock-in with a real cost is required first."""

    code = "zero_cost_sale"
    status_code = 409


class AmbiguousVariant(LedgerError):
    """More than one product matches a normalized natural key."""

    code = "ambiguous_variant"
    status_code = 409

    def __init__(self, message: str, *, candidate_ids: list[int] | None = None):
        super().__init__(message)
        self.candidate_ids = candidate_ids or []


class OrphanedReference(LedgerError):
    """A stock-in entry no longer resolves to any product."""

    code = "orphaned_reference"
    status_code = 409


class InsufficientHistoricalStock(LedgerError):
    """
    A purchase edit/delete would leave recorded sales consuming more units
    than remain purchased.
    """

    code = "insufficient_historical_stock"
    status_code = 409


class PersistenceFailure(LedgerError):
    """Underlying store unavailable; the whole operation was rolled back."""

    code = "persistence_failure"
    status_code = 503


class LockTimeout(PersistenceFailure):
    code = "lock_timeout"


class OperationCancelled(LedgerError):
    """The caller cancelled before commit; nothing was written."""

    code = "cancelled"
    status_code = 409


def error_response(exc: LedgerError) -> tuple[dict, int]:
    """Translate a ledger error into the JSON body + status used by the routes."""
    body = {"error": str(exc), "code": exc.code}
    if isinstance(exc, InsufficientStock):
        body["available"] = exc.available
        body["requested"] = exc.requested
    if isinstance(exc, AmbiguousVariant) and exc.candidate_ids:
        body["candidate_ids"] = exc.candidate_ids
    return body, exc.status_code
