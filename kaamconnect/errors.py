# Domain errors raised by the booking lifecycle and message store.
# Each carries the HTTP status the API layer renders it with and a stable machine-readable code.
from __future__ import annotations

from typing import Optional


class KaamConnectError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(KaamConnectError):
    status_code = 404
    code = "not_found"


class InvalidDateRange(KaamConnectError):
    code = "invalid_date_range"


class OutOfAvailabilityWindow(KaamConnectError):
    code = "out_of_availability_window"


class SelfBookingForbidden(KaamConnectError):
    status_code = 403
    code = "self_booking_forbidden"


class InvalidHours(KaamConnectError):
    code = "invalid_hours"


class OverlapConflict(KaamConnectError):
    """Requested range intersects a blocking booking on the same equipment."""
    status_code = 409
    code = "overlap_conflict"

    def __init__(self, message: str, conflicting_booking_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.conflicting_booking_id = conflicting_booking_id


class InvalidStateTransition(KaamConnectError):
    code = "invalid_state_transition"


class Unauthenticated(KaamConnectError):
    """Missing, malformed or expired bearer token."""
    status_code = 401
    code = "unauthenticated"


class Unauthorized(KaamConnectError):
    status_code = 403
    code = "unauthorized"


class StoreError(KaamConnectError):
    """Persistence failure; message is the underlying driver/ORM error."""
    status_code = 500
    code = "store_error"


class EmptyMessage(KaamConnectError):
    """Blank chat body. The chat engine drops these silently instead of surfacing them."""
    code = "empty_message"


class SendFailed(KaamConnectError):
    """Chat send that could not reach the store.

    Kept as state on the chat thread (never raised by send_message) so the
    caller can show a banner and offer a retry of the draft identified by local_id.
    """
    status_code = 503
    code = "send_failed"

    def __init__(self, message: str, local_id: str) -> None:
        super().__init__(message)
        self.local_id = local_id
