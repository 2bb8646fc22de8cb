"""
shared/exceptions.py
Typed domain errors raised by the booking, matching, settlement and wallet
services. Each carries an HTTP status, a stable error code and a context
dict that is rendered alongside the message.
"""

from typing import Any, Optional


class DomainError(Exception):
    status_code: int = 400
    error_code: str = "domain_error"
    message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, **context: Any):
        if message:
            self.message = message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "error_code": self.error_code, **self.context}


class NotFound(DomainError):
    status_code = 404
    error_code = "not_found"
    message = "Requested resource not found"


class InvalidState(DomainError):
    status_code = 409
    error_code = "invalid_state"
    message = "Operation not allowed in the current status"


class Unauthorized(DomainError):
    status_code = 403
    error_code = "unauthorized"
    message = "You are not allowed to perform this action"


class ValidationFailure(DomainError):
    status_code = 400
    error_code = "validation_failure"
    message = "Validation failed"


class ConflictAlreadyClaimed(DomainError):
    status_code = 409
    error_code = "already_claimed"
    message = "This job has already been taken by another partner"


class InsufficientFunds(DomainError):
    status_code = 400
    error_code = "insufficient_funds"
    message = "Insufficient available balance"


class GeofenceViolation(DomainError):
    status_code = 400
    error_code = "geofence_violation"
    message = "You are too far from the service location"


class PreconditionMissing(DomainError):
    status_code = 400
    error_code = "precondition_missing"
    message = "A required step has not been completed"


class RefundFailed(DomainError):
    status_code = 502
    error_code = "refund_failed"
    message = "Refund could not be issued"


class SettlementError(DomainError):
    status_code = 500
    error_code = "settlement_error"
    message = "Booking could not be settled"


class Unauthenticated(DomainError):
    status_code = 401
    error_code = "unauthenticated"
    message = "Authentication required"
