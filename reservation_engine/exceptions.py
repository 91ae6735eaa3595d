"""
Error taxonomy for the reservation engine.

Every error carries the HTTP status the API surface answers with, so the
FastAPI layer maps them with a single handler.
"""

from typing import Optional


class ReservationEngineError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(ReservationEngineError):
    """Malformed input. Never retried."""
    status_code = 400


class Unauthenticated(ReservationEngineError):
    status_code = 401


class Unauthorized(ReservationEngineError):
    """Role or ownership mismatch."""
    status_code = 403


class NotFound(ReservationEngineError):
    status_code = 404


class UnknownTransaction(ReservationEngineError):
    """A payment event references no known transaction."""
    status_code = 404


class OutOfStock(ReservationEngineError):
    status_code = 409

    def __init__(self, item_id: str, requested: int, available: Optional[int] = None):
        detail = f"Item {item_id} cannot supply {requested} unit(s)"
        if available is not None:
            detail += f" ({available} available)"
        super().__init__(detail)
        self.item_id = item_id
        self.requested = requested
        self.available = available


class Unavailable(ReservationEngineError):
    """The copy is already on loan."""
    status_code = 409

    def __init__(self, item_id: str):
        super().__init__(f"Item {item_id} is not available for loan")
        self.item_id = item_id


class InvalidState(ReservationEngineError):
    status_code = 409


class AlreadyReturned(InvalidState):
    pass


class AlreadyCommitted(InvalidState):
    pass


class ExternalServiceError(ReservationEngineError):
    """The payment gateway could not be reached after bounded retries."""
    status_code = 502
