"""
Offer endpoints
===============

GET  /api/v1/offers/{attempt_id}          -- countdown derived from the server deadline
POST /api/v1/offers/{attempt_id}/respond  -- driver accepts or rejects
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from booking_engine.api.dependencies import get_scheduler
from booking_engine.api.middleware import limiter
from booking_engine.api.schemas import (
    OfferDecisionResponse,
    OfferResponse,
    OfferResponseRequest,
)
from booking_engine.config import settings
from booking_engine.services.dispatch import DispatchScheduler

router = APIRouter(prefix="/offers", tags=["offers"])


@router.get("/{attempt_id}", response_model=OfferResponse, summary="Offer countdown")
@limiter.limit(settings.default_rate_limit)
async def get_offer(
    request: Request,
    attempt_id: int,
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    found = await scheduler.describe_offer(attempt_id)
    if found is None:
        raise HTTPException(status_code=404, detail="Offer not found")
    attempt, seconds = found
    return OfferResponse.from_attempt(attempt, seconds)


@router.post(
    "/{attempt_id}/respond",
    response_model=OfferDecisionResponse,
    summary="Accept or reject an offer",
    description=(
        "Responses to expired, superseded or already settled offers are "
        "discarded and reported as ``discarded``."
    ),
)
@limiter.limit(settings.default_rate_limit)
async def respond_to_offer(
    request: Request,
    attempt_id: int,
    body: OfferResponseRequest,
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    result = await scheduler.respond(attempt_id, body.driver_id, body.accepted)
    return OfferDecisionResponse(attempt_id=attempt_id, result=result.value)
