"""
FastAPI application factory.

* Registers routes for bookings, offers, drivers and admin.
* Builds the booking engine (unless one is injected) and starts / stops the
  offer sweeper via lifespan events.
* Maps engine errors to HTTP status codes.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from booking_engine.api.middleware import limiter
from booking_engine.api.routes import admin, bookings, drivers, offers
from booking_engine.config import settings
from booking_engine.domain.errors import (
    ActiveBookingLimitExceeded,
    BookingEngineError,
    BookingNotFound,
    CancellationLimitExceeded,
    DriverNotFound,
    InvalidTransition,
    PolicyOutOfRange,
    StaleWrite,
)
from booking_engine.engine import BookingEngine, build_default_engine
from booking_engine.infrastructure.locks import LockNotAcquired
from booking_engine.workers import offer_sweeper as _sweeper

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type, int]] = [
    (BookingNotFound, 404),
    (DriverNotFound, 404),
    (InvalidTransition, 409),
    (StaleWrite, 409),
    (PolicyOutOfRange, 422),
    (CancellationLimitExceeded, 429),
    (ActiveBookingLimitExceeded, 429),
]


def status_for(exc: BookingEngineError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 400


async def _engine_error_handler(request: Request, exc: BookingEngineError):
    body = {"detail": str(exc)}
    # Passengers get the summary; the admin surface also sees the taxonomy
    if request.url.path.startswith("/api/v1/admin"):
        body["code"] = exc.code
    return JSONResponse(status_code=status_for(exc), content=body)


async def _lock_busy_handler(request: Request, exc: LockNotAcquired):
    logger.warning("Booking lock busy: %s", exc)
    return JSONResponse(
        status_code=503, content={"detail": "Booking is busy, retry shortly"}
    )


def create_app(
    engine: Optional[BookingEngine] = None, run_workers: bool = True
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the offer sweeper on startup; stop workers on shutdown."""
        if app.state.engine is None:
            app.state.engine = build_default_engine()
        if run_workers:
            await _sweeper.start_sweeper_loop(app.state.engine)
        yield
        if run_workers:
            await _sweeper.stop_sweeper_loop()
        await app.state.engine.shutdown()

    app = FastAPI(
        title="Booking Dispatch & Lifecycle API",
        description=(
            "Assigns drivers to passenger bookings under an offer deadline, "
            "retries on rejection or timeout, and enforces the booking "
            "status lifecycle with policy-driven cancellation and no-show fees."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Engine errors
    app.add_exception_handler(BookingEngineError, _engine_error_handler)
    app.add_exception_handler(LockNotAcquired, _lock_busy_handler)

    # Routers
    app.include_router(bookings.router, prefix="/api/v1")
    app.include_router(offers.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
