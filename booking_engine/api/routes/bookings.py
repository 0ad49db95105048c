"""
Booking endpoints
=================

POST /api/v1/bookings                   -- create a booking (201)
GET  /api/v1/bookings/{id}              -- passenger view
POST /api/v1/bookings/{id}/payment      -- record payment status
POST /api/v1/bookings/{id}/confirm      -- pending -> confirmed
POST /api/v1/bookings/{id}/dispatch     -- start the driver search (202)
POST /api/v1/bookings/{id}/cancel       -- passenger cancellation (fee applies)
POST /api/v1/bookings/{id}/en-route     -- driver heading to pickup
POST /api/v1/bookings/{id}/arrived      -- driver at pickup (starts no-show wait)
POST /api/v1/bookings/{id}/start        -- passenger picked up
POST /api/v1/bookings/{id}/complete     -- trip finished
POST /api/v1/bookings/{id}/no-show      -- passenger never showed
POST /api/v1/bookings/{id}/refund       -- refund a closed booking
POST /api/v1/bookings/{id}/dispute      -- open a manual-review dispute
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from booking_engine.api.dependencies import get_lifecycle, get_scheduler
from booking_engine.api.middleware import limiter
from booking_engine.api.schemas import (
    BookingCreateRequest,
    BookingResponse,
    CancelRequest,
    DispatchStartedResponse,
    DisputeRequest,
    DisputeResponse,
    DriverActionRequest,
    PaymentRequest,
)
from booking_engine.config import settings
from booking_engine.domain.enums import Actor
from booking_engine.services.dispatch import DispatchScheduler
from booking_engine.services.lifecycle import LifecycleService

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post(
    "",
    status_code=201,
    response_model=BookingResponse,
    summary="Create a booking",
)
@limiter.limit(settings.default_rate_limit)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    booking = await lifecycle.admit_booking(
        body.passenger_id,
        body.pickup_at,
        body.total_cost,
        awaiting_payment=body.awaiting_payment,
    )
    return BookingResponse.from_booking(booking)


@router.get(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Get booking status, driver and fee",
)
@limiter.limit(settings.default_rate_limit)
async def get_booking(
    request: Request,
    booking_id: int,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    return BookingResponse.from_booking(await lifecycle.get_booking(booking_id))


@router.post("/{booking_id}/payment", response_model=BookingResponse)
@limiter.limit(settings.default_rate_limit)
async def record_payment(
    request: Request,
    booking_id: int,
    body: PaymentRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    booking = await lifecycle.record_payment(booking_id, body.payment_status)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
@limiter.limit(settings.default_rate_limit)
async def confirm_booking(
    request: Request,
    booking_id: int,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    return BookingResponse.from_booking(await lifecycle.confirm(booking_id))


@router.post(
    "/{booking_id}/dispatch",
    status_code=202,
    response_model=DispatchStartedResponse,
    summary="Start searching for a driver",
    responses={202: {"description": "Search started; the outcome is notified."}},
)
@limiter.limit(settings.default_rate_limit)
async def begin_dispatch(
    request: Request,
    booking_id: int,
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    await scheduler.begin_dispatch(booking_id)
    return DispatchStartedResponse(booking_id=booking_id)


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingResponse,
    summary="Cancel a booking",
    description=(
        "Free within the free-cancellation window, when no driver was "
        "assigned yet, or when the driver is late; otherwise the late "
        "cancellation fee applies."
    ),
)
@limiter.limit(settings.cancel_rate_limit)
async def cancel_booking(
    request: Request,
    booking_id: int,
    body: CancelRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    booking = await lifecycle.cancel(
        booking_id, actor=Actor.PASSENGER, reason=body.reason, note=body.note
    )
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/en-route", response_model=BookingResponse)
@limiter.limit(settings.default_rate_limit)
async def driver_en_route(
    request: Request,
    booking_id: int,
    body: DriverActionRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    booking = await lifecycle.start_en_route(booking_id, body.driver_id)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/arrived", response_model=BookingResponse)
@limiter.limit(settings.default_rate_limit)
async def driver_arrived(
    request: Request,
    booking_id: int,
    body: DriverActionRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    booking = await lifecycle.mark_driver_arrived(booking_id, body.driver_id)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/start", response_model=BookingResponse)
@limiter.limit(settings.default_rate_limit)
async def start_trip(
    request: Request,
    booking_id: int,
    body: DriverActionRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    booking = await lifecycle.start_trip(booking_id, body.driver_id)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
@limiter.limit(settings.default_rate_limit)
async def complete_trip(
    request: Request,
    booking_id: int,
    body: DriverActionRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    booking = await lifecycle.complete(booking_id, body.driver_id)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/no-show", response_model=BookingResponse)
@limiter.limit(settings.cancel_rate_limit)
async def report_no_show(
    request: Request,
    booking_id: int,
    body: DriverActionRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    booking = await lifecycle.report_no_show(booking_id, body.driver_id)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/refund", response_model=BookingResponse)
@limiter.limit(settings.default_rate_limit)
async def refund_booking(
    request: Request,
    booking_id: int,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    return BookingResponse.from_booking(await lifecycle.refund(booking_id))


@router.post(
    "/{booking_id}/dispute",
    status_code=201,
    response_model=DisputeResponse,
    summary="Dispute a charge or the service",
)
@limiter.limit(settings.dispute_rate_limit)
async def open_dispute(
    request: Request,
    booking_id: int,
    body: DisputeRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    dispute = await lifecycle.open_dispute(
        booking_id, body.passenger_id, body.reason.value, body.description
    )
    return DisputeResponse.from_dispute(dispute)
