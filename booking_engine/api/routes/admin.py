"""
Admin / observability endpoints
===============================

GET  /api/v1/admin/policy                       -- current policy snapshot
PUT  /api/v1/admin/policy                       -- store a new policy version
GET  /api/v1/admin/bookings/{id}                -- full booking record
POST /api/v1/admin/bookings/{id}/status         -- forced status change (validated)
GET  /api/v1/admin/bookings/{id}/attempts       -- dispatch audit log
GET  /api/v1/admin/health                       -- simple health check
"""

from typing import Any

from fastapi import APIRouter, Depends, Request

from booking_engine.api.dependencies import get_engine, get_lifecycle
from booking_engine.api.middleware import limiter
from booking_engine.api.schemas import (
    AdminBookingResponse,
    AdminStatusRequest,
    AttemptResponse,
    HealthResponse,
    PolicyUpdateRequest,
)
from booking_engine.config import settings
from booking_engine.engine import BookingEngine
from booking_engine.services.lifecycle import LifecycleService

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/policy", response_model=dict[str, Any], summary="Current policy")
@limiter.limit(settings.default_rate_limit)
async def get_policy(
    request: Request,
    engine: BookingEngine = Depends(get_engine),
):
    return (await engine.current_policy()).to_dict()


@router.put(
    "/policy",
    response_model=dict[str, Any],
    summary="Update policy",
    description="Out-of-range values are rejected with 422; nothing is clamped.",
)
@limiter.limit(settings.default_rate_limit)
async def update_policy(
    request: Request,
    body: PolicyUpdateRequest,
    engine: BookingEngine = Depends(get_engine),
):
    policy = await engine.update_policy(body.changes(), body.updated_by)
    return policy.to_dict()


@router.get("/bookings/{booking_id}", response_model=AdminBookingResponse)
@limiter.limit(settings.default_rate_limit)
async def get_booking_record(
    request: Request,
    booking_id: int,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    return AdminBookingResponse.from_booking(await lifecycle.get_booking(booking_id))


@router.post(
    "/bookings/{booking_id}/status",
    response_model=AdminBookingResponse,
    summary="Force a booking status",
    description="Goes through the status validator and stops any running dispatch.",
)
@limiter.limit(settings.default_rate_limit)
async def override_status(
    request: Request,
    booking_id: int,
    body: AdminStatusRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    booking = await lifecycle.override_status(
        booking_id, body.status, note=body.note, driver_id=body.driver_id
    )
    return AdminBookingResponse.from_booking(booking)


@router.get(
    "/bookings/{booking_id}/attempts",
    response_model=list[AttemptResponse],
    summary="Dispatch attempts of a booking",
)
@limiter.limit(settings.default_rate_limit)
async def list_attempts(
    request: Request,
    booking_id: int,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    attempts = await lifecycle.list_attempts(booking_id)
    return [AttemptResponse.from_attempt(a) for a in attempts]


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
