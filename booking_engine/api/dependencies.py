"""FastAPI dependency injection helpers."""

from fastapi import Request

from booking_engine.engine import BookingEngine
from booking_engine.services.dispatch import DispatchScheduler
from booking_engine.services.lifecycle import LifecycleService


def get_engine(request: Request) -> BookingEngine:
    """The engine the app was started with (see ``create_app``)."""
    return request.app.state.engine


def get_lifecycle(request: Request) -> LifecycleService:
    return get_engine(request).lifecycle


def get_scheduler(request: Request) -> DispatchScheduler:
    return get_engine(request).scheduler
