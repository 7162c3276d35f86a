"""Error taxonomy for the cost ledger.

Every failure the ledger reports is a ``LedgerError`` carrying a stable
``error_code`` so callers can tell validation problems apart from
conservation and business-rule violations without parsing messages.
"""

from __future__ import annotations

from typing import Any, Optional


class LedgerError(Exception):
    """Base ledger error with a machine-readable code and context."""

    http_status = 400
    error_code = "LEDGER_ERROR"
    message = "Ledger operation failed"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.message
        self.context = context
        super().__init__(self.message)

    def to_response(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "code": self.error_code,
            "context": self.context or None,
        }


class ValidationError(LedgerError, ValueError):
    """Malformed or incomplete input, rejected before any state change."""

    http_status = 400
    error_code = "VALIDATION_ERROR"
    message = "Invalid input provided"


class EmptyInvoice(ValidationError):
    error_code = "EMPTY_INVOICE"
    message = "An invoice needs at least one line item"


class NotFound(LedgerError):
    http_status = 404
    error_code = "NOT_FOUND"
    message = "Record not found"


class ConservationError(LedgerError):
    """A quantity movement that would break stock conservation."""

    http_status = 409
    error_code = "CONSERVATION_VIOLATION"


class InsufficientStock(ConservationError):
    error_code = "INSUFFICIENT_STOCK"
    message = "Not enough stock available"


class ExcessReturn(ConservationError):
    error_code = "EXCESS_RETURN"
    message = "Cannot return more than the outstanding issued quantity"


class OutOfRange(ConservationError):
    error_code = "OUT_OF_RANGE"
    message = "Unused quantity is out of range"


class BusinessRuleError(LedgerError):
    http_status = 422
    error_code = "BUSINESS_RULE_VIOLATION"


class NotApproved(BusinessRuleError):
    error_code = "NOT_APPROVED"
    message = "Only approved change orders can be billed"


class AlreadyInvoiced(BusinessRuleError):
    error_code = "ALREADY_INVOICED"
    message = "Source has already been invoiced"


class InvalidTransition(BusinessRuleError):
    error_code = "INVALID_TRANSITION"
    message = "Status transition is not allowed"


class StorageError(LedgerError):
    """Persistence is unreachable or locked. Not retried by the ledger."""

    http_status = 503
    error_code = "STORAGE_UNAVAILABLE"
    message = "Storage is temporarily unavailable"
