"""
Exception Hierarchy Module

Every error raised by the servicing engine derives from ServicingError and
belongs to exactly one category. The category decides how the API layer
reports it (see HTTP_STATUS_BY_CATEGORY).
"""

from typing import Any, Dict, Optional


class ServicingError(Exception):
    """Base exception for all loan servicing errors."""

    code = "servicing_error"

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


# Invalid input

class InvalidInputError(ServicingError, ValueError):
    """Raised when a request carries malformed or out-of-range values."""

    code = "invalid_input"


class InvalidScheduleParameters(InvalidInputError):
    """Raised when schedule terms (principal, rate, term, method, start date) are invalid."""

    code = "invalid_schedule_parameters"


class InvalidAmount(InvalidInputError):
    """Raised when a payment amount is not a positive 2dp money value."""

    code = "invalid_amount"


class CsvImportError(InvalidInputError):
    """Raised when a CSV upload cannot be parsed at all."""

    code = "invalid_csv"


# Conflict

class ConflictError(ServicingError):
    """Raised when a write would violate a uniqueness rule."""

    code = "conflict"


class ScheduleAlreadyExists(ConflictError):
    """Raised when a schedule is persisted twice for the same loan."""

    code = "schedule_already_exists"


class DuplicateLoan(ConflictError):
    """Raised when a loan id is registered twice within a tenant."""

    code = "duplicate_loan"


# Not found

class NotFoundError(ServicingError):
    """Raised when a referenced entity does not exist for the caller's tenant."""

    code = "not_found"


class LoanNotFound(NotFoundError):
    code = "loan_not_found"


class CustomerNotFound(NotFoundError):
    code = "customer_not_found"


# Invalid state

class InvalidStateError(ServicingError):
    """Raised when an entity is in the wrong state for the operation."""

    code = "invalid_state"


class LoanNotActive(InvalidStateError):
    """Raised when a payment targets a loan that is not disbursed."""

    code = "loan_not_active"


class InvalidLoanTransition(InvalidStateError):
    """Raised when a lifecycle transition is not allowed from the current status."""

    code = "invalid_loan_transition"


# Internal

class InternalError(ServicingError):
    """Raised when the engine cannot complete an operation; safe to retry."""

    code = "internal_error"


class LockTimeout(InternalError):
    """Raised when a per-loan lock cannot be acquired within the allowed wait."""

    code = "lock_timeout"


class OperationCancelled(InternalError):
    """Raised when the caller cancels an operation before it commits."""

    code = "operation_cancelled"


class StorageError(InternalError):
    """Raised when the persistence layer rejects a write."""

    code = "storage_error"


HTTP_STATUS_BY_CATEGORY = (
    (InvalidInputError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidStateError, 409),
    (LockTimeout, 503),
    (OperationCancelled, 503),
    (InternalError, 500),
)


def http_status_for(error: ServicingError) -> int:
    """Map an exception to the HTTP status the API reports for its category"""
    for error_type, status_code in HTTP_STATUS_BY_CATEGORY:
        if isinstance(error, error_type):
            return status_code
    return 500
