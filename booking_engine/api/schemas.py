"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from booking_engine.domain.entities import Booking, DispatchAttempt, Dispute, Driver
from booking_engine.domain.enums import (
    BookingStatus,
    CancellationReason,
    DisputeReason,
    DriverStatus,
    PaymentStatus,
)


# ── Requests ──────────────────────────────────────────────────────────


class BookingCreateRequest(BaseModel):
    passenger_id: int
    pickup_at: datetime = Field(..., description="Promised pickup time (UTC).")
    total_cost: float = Field(..., ge=0)
    awaiting_payment: bool = Field(
        False, description="Start in awaiting_payment until the payment is recorded."
    )


class PaymentRequest(BaseModel):
    payment_status: PaymentStatus


class CancelRequest(BaseModel):
    reason: CancellationReason = CancellationReason.PASSENGER_REQUEST
    note: Optional[str] = Field(None, max_length=500)


class DriverActionRequest(BaseModel):
    driver_id: int


class DisputeRequest(BaseModel):
    passenger_id: int
    reason: DisputeReason
    description: str = Field(..., max_length=5000)


class OfferResponseRequest(BaseModel):
    driver_id: int
    accepted: bool


class DriverStatusRequest(BaseModel):
    status: DriverStatus


class AdminStatusRequest(BaseModel):
    status: BookingStatus
    note: Optional[str] = Field(None, max_length=500)
    driver_id: Optional[int] = Field(
        None, description="Driver to attach when forcing driver_assigned."
    )


class PolicyUpdateRequest(BaseModel):
    """Partial update; bounds are enforced by the engine (422 when violated)."""

    max_rematch_attempts: Optional[int] = None
    driver_response_timeout: Optional[float] = None
    total_search_timeout: Optional[float] = None
    delay_between_matches: Optional[float] = None
    allow_multiple_jobs: Optional[bool] = None
    enable_cancellation_fee: Optional[bool] = None
    free_cancellation_window: Optional[float] = None
    late_cancellation_fee: Optional[float] = None
    cancellation_fee_to_driver_percent: Optional[float] = None
    enable_driver_late_waiver: Optional[bool] = None
    driver_late_threshold: Optional[float] = None
    enable_no_show_fee: Optional[bool] = None
    no_show_wait_time: Optional[float] = None
    no_show_fee: Optional[float] = None
    no_show_fee_to_driver_percent: Optional[float] = None
    max_active_bookings: Optional[int] = None
    enable_cancellation_limit: Optional[bool] = None
    max_cancellations_per_day: Optional[int] = None
    enable_dispute: Optional[bool] = None
    dispute_window: Optional[int] = None
    updated_by: str = "admin"

    model_config = {"extra": "forbid"}

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={"updated_by"})


# ── Responses ─────────────────────────────────────────────────────────


def display_status(booking: Booking) -> str:
    """Passenger-facing summary of where the booking stands."""
    if booking.status == BookingStatus.CONFIRMED and booking.search_started_at:
        return "searching"
    if (
        booking.status == BookingStatus.CANCELLED
        and booking.cancellation is not None
        and booking.cancellation.reason == CancellationReason.NO_DRIVER_AVAILABLE.value
    ):
        return "no_driver_found"
    return booking.status.value


class BookingResponse(BaseModel):
    id: int
    passenger_id: int
    status: str
    display_status: str
    payment_status: str
    pickup_at: Optional[datetime] = None
    total_cost: float
    assigned_driver_id: Optional[int] = None
    driver_arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    fee: Optional[float] = None
    fee_reason: Optional[str] = None
    has_dispute: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        c = booking.cancellation
        return cls(
            id=booking.id,
            passenger_id=booking.passenger_id,
            status=booking.status.value,
            display_status=display_status(booking),
            payment_status=PaymentStatus(booking.payment_status).value,
            pickup_at=booking.pickup_at,
            total_cost=booking.total_cost,
            assigned_driver_id=booking.assigned_driver_id,
            driver_arrived_at=booking.driver_arrived_at,
            completed_at=booking.completed_at,
            fee=c.fee_charged if c else None,
            fee_reason=(c.waived_reason_code or c.reason) if c else None,
            has_dispute=booking.has_dispute,
            created_at=booking.created_at,
        )


class StatusChangeResponse(BaseModel):
    status: str
    at: datetime
    actor: str
    note: Optional[str] = None


class CancellationResponse(BaseModel):
    reason: str
    at: datetime
    cancelled_by: str
    fee_charged: float
    fee_waived: bool
    waived_reason_code: Optional[str] = None
    driver_payout: float
    driver_id: Optional[int] = None


class AdminBookingResponse(BookingResponse):
    rematch_count: int
    search_started_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    cancellation: Optional[CancellationResponse] = None
    status_history: list[StatusChangeResponse] = []
    version: int

    @classmethod
    def from_booking(cls, booking: Booking) -> "AdminBookingResponse":
        base = BookingResponse.from_booking(booking).model_dump()
        c = booking.cancellation
        return cls(
            **base,
            rematch_count=booking.rematch_count,
            search_started_at=booking.search_started_at,
            assigned_at=booking.assigned_at,
            cancellation=(
                CancellationResponse(
                    reason=c.reason,
                    at=c.at,
                    cancelled_by=c.cancelled_by.value,
                    fee_charged=c.fee_charged,
                    fee_waived=c.fee_waived,
                    waived_reason_code=c.waived_reason_code,
                    driver_payout=c.driver_payout,
                    driver_id=c.driver_id,
                )
                if c
                else None
            ),
            status_history=[
                StatusChangeResponse(
                    status=h.status.value, at=h.at, actor=h.actor.value, note=h.note
                )
                for h in booking.status_history
            ],
            version=booking.version,
        )


class DispatchStartedResponse(BaseModel):
    booking_id: int
    display_status: str = "searching"


class OfferResponse(BaseModel):
    attempt_id: int
    booking_id: int
    driver_id: int
    deadline: datetime
    seconds_remaining: float
    outcome: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt: DispatchAttempt, seconds: float) -> "OfferResponse":
        return cls(
            attempt_id=attempt.id,
            booking_id=attempt.booking_id,
            driver_id=attempt.driver_id,
            deadline=attempt.deadline,
            seconds_remaining=seconds,
            outcome=attempt.outcome.value if attempt.outcome else None,
        )


class OfferDecisionResponse(BaseModel):
    attempt_id: int
    result: str


class AttemptResponse(BaseModel):
    id: int
    driver_id: int
    offered_at: datetime
    deadline: datetime
    outcome: Optional[str] = None
    responded_at: Optional[datetime] = None

    @classmethod
    def from_attempt(cls, attempt: DispatchAttempt) -> "AttemptResponse":
        return cls(
            id=attempt.id,
            driver_id=attempt.driver_id,
            offered_at=attempt.offered_at,
            deadline=attempt.deadline,
            outcome=attempt.outcome.value if attempt.outcome else None,
            responded_at=attempt.responded_at,
        )


class DriverResponse(BaseModel):
    id: int
    name: str
    status: str
    idle_since: Optional[datetime] = None
    total_trips: int
    total_earnings: float

    @classmethod
    def from_driver(cls, driver: Driver) -> "DriverResponse":
        return cls(
            id=driver.id,
            name=driver.name,
            status=driver.status.value,
            idle_since=driver.idle_since,
            total_trips=driver.total_trips,
            total_earnings=driver.total_earnings,
        )


class DisputeResponse(BaseModel):
    id: int
    booking_id: int
    reason: str
    status: str
    fee_under_dispute: float
    created_at: Optional[datetime] = None

    @classmethod
    def from_dispute(cls, dispute: Dispute) -> "DisputeResponse":
        return cls(
            id=dispute.id,
            booking_id=dispute.booking_id,
            reason=dispute.reason,
            status=dispute.status,
            fee_under_dispute=dispute.fee_under_dispute,
            created_at=dispute.created_at,
        )


class ErrorResponse(BaseModel):
    detail: str
    code: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "ok"
