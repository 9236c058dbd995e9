"""Exceptions raised by the dispatch engine.

Race losses and idempotent replays are not errors: they come back as
ordinary result objects. Everything here is surfaced to the caller as-is.
"""


class DispatchError(Exception):
    """Base class. ``details`` carries the measured values a caller can act on."""

    code = "error"
    status_code = 400

    def __init__(self, message: str, code: str = None, **details):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


class NotFound(DispatchError):
    """Raised when a request, driver, offer or escrow record does not exist."""
    code = "not_found"
    status_code = 404


class InvalidInput(DispatchError):
    """Raised for malformed coordinates, non-positive amounts, prices out of band."""
    code = "invalid_input"
    status_code = 400


class NotAuthorized(DispatchError):
    """Raised when the caller is not the party allowed to act on the record."""
    code = "not_authorized"
    status_code = 403


class StateConflict(DispatchError):
    """Raised when an explicit transition finds the record in another state."""
    code = "state_conflict"
    status_code = 409


class PreconditionFailed(DispatchError):
    """Raised when a business rule blocks the operation (timing, distance, balance)."""
    code = "precondition_failed"
    status_code = 422
