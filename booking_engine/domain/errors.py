"""
Error taxonomy of the booking engine.

Every error carries a stable ``code`` so the admin surface can show the
low-level reason while the passenger surface only shows a summary.
"""

from __future__ import annotations

from typing import Optional


class BookingEngineError(Exception):
    code = "engine_error"


class InvalidTransition(BookingEngineError):
    """Attempted status edge is not in the booking status graph."""

    code = "invalid_transition"

    def __init__(self, current, requested, detail: Optional[str] = None):
        self.current = current
        self.requested = requested
        self.detail = detail
        message = f"Cannot transition from {_value(current)} to {_value(requested)}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class NoDriverFound(BookingEngineError):
    """Dispatch exhausted its retries, its total search time, or its candidates."""

    code = "no_driver_found"

    def __init__(self, booking_id: int, reason: str):
        self.booking_id = booking_id
        self.reason = reason
        super().__init__(f"No driver found for booking {booking_id} ({reason})")


class StaleWrite(BookingEngineError):
    """Stored record moved since it was read; re-read and retry the operation."""

    code = "stale_write"

    def __init__(self, booking_id: int):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} was modified concurrently")


class CancellationLimitExceeded(BookingEngineError):
    code = "cancellation_limit_exceeded"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Cancellation limit of {limit} per day reached")


class ActiveBookingLimitExceeded(BookingEngineError):
    code = "active_booking_limit_exceeded"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Passenger already holds {limit} active booking(s)")


class PolicyOutOfRange(BookingEngineError):
    code = "policy_out_of_range"

    def __init__(self, field: str, value, bounds: tuple):
        self.field = field
        self.value = value
        self.bounds = bounds
        super().__init__(
            f"Policy field {field}={value!r} outside allowed range "
            f"{bounds[0]}..{bounds[1]}"
        )


class BookingNotFound(BookingEngineError):
    code = "booking_not_found"

    def __init__(self, booking_id: int):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} not found")


class DriverNotFound(BookingEngineError):
    code = "driver_not_found"

    def __init__(self, driver_id: int):
        self.driver_id = driver_id
        super().__init__(f"Driver {driver_id} not found")


class NoShowNotEligible(BookingEngineError):
    code = "no_show_not_eligible"

    def __init__(self, remaining_seconds: float):
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Driver must wait another {remaining_seconds:.0f}s before reporting a no-show"
        )


class DisputeNotAllowed(BookingEngineError):
    code = "dispute_not_allowed"


class DriverUnavailable(BookingEngineError):
    code = "driver_unavailable"


def _value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)
