"""
Domain entities.

``Booking`` is a plain record: its status is only ever changed through
``transitions.request_transition`` (see ``Booking.transition_to``), which
also keeps the driver-assignment invariant.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .enums import (
    Actor,
    AttemptOutcome,
    BookingStatus,
    DriverStatus,
    PaymentStatus,
    TERMINAL_STATUSES,
)


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Cancellation:
    reason: str
    at: datetime
    cancelled_by: Actor = Actor.PASSENGER
    fee_charged: float = 0.0
    fee_waived: bool = False
    waived_reason_code: Optional[str] = None
    driver_payout: float = 0.0
    driver_id: Optional[int] = None


@dataclass(frozen=True)
class StatusChange:
    status: BookingStatus
    at: datetime
    actor: Actor = Actor.SYSTEM
    note: Optional[str] = None


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Booking:
    id: Optional[int] = None
    passenger_id: int = 0
    status: BookingStatus = BookingStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    pickup_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    total_cost: float = 0.0
    assigned_driver_id: Optional[int] = None
    assigned_at: Optional[datetime] = None
    driver_arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rematch_count: int = 0
    search_started_at: Optional[datetime] = None
    cancellation: Optional[Cancellation] = None
    has_dispute: bool = False
    status_history: list[StatusChange] = field(default_factory=list)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_to(self, new_status: BookingStatus, **changes) -> "Booking":
        """Validated transition; raises ``InvalidTransition`` on an illegal edge."""
        from .transitions import request_transition

        return request_transition(self, new_status, **changes).unwrap()


@dataclass
class Driver:
    id: Optional[int] = None
    user_id: int = 0
    name: str = ""
    status: DriverStatus = DriverStatus.OFFLINE
    idle_since: Optional[datetime] = None
    total_trips: int = 0
    total_earnings: float = 0.0


@dataclass
class DispatchAttempt:
    id: Optional[int] = None
    booking_id: int = 0
    driver_id: int = 0
    offered_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    outcome: Optional[AttemptOutcome] = None
    responded_at: Optional[datetime] = None

    @property
    def is_outstanding(self) -> bool:
        return self.outcome is None

    def seconds_remaining(self, now: datetime) -> float:
        """Countdown shown to the driver; purely informational."""
        if not self.is_outstanding or self.deadline is None:
            return 0.0
        return max(0.0, (self.deadline - now).total_seconds())


@dataclass
class Dispute:
    id: Optional[int] = None
    booking_id: int = 0
    passenger_id: int = 0
    driver_id: Optional[int] = None
    reason: str = "other"
    description: str = ""
    status: str = "open"
    fee_under_dispute: float = 0.0
    created_at: Optional[datetime] = None
