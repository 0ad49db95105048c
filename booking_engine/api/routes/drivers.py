"""
Driver endpoints
================

POST /api/v1/drivers/{driver_id}/status -- go available / offline
"""

from fastapi import APIRouter, Depends, Request

from booking_engine.api.dependencies import get_lifecycle
from booking_engine.api.middleware import limiter
from booking_engine.api.schemas import DriverResponse, DriverStatusRequest
from booking_engine.config import settings
from booking_engine.services.lifecycle import LifecycleService

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post("/{driver_id}/status", response_model=DriverResponse)
@limiter.limit(settings.default_rate_limit)
async def set_driver_status(
    request: Request,
    driver_id: int,
    body: DriverStatusRequest,
    lifecycle: LifecycleService = Depends(get_lifecycle),
):
    driver = await lifecycle.set_driver_status(driver_id, body.status)
    return DriverResponse.from_driver(driver)
