"""
Notification Dispatcher
=======================

Stateless fan-out from engine events to the external delivery channel.

* ``dispatch`` formats ``{type, title, message, data}`` and schedules the
  delivery on a background task -- the caller never waits on delivery.
* Delivery is attempted at most once per event.  Failures are logged and
  swallowed; they never reach the caller and never undo a committed
  status change.
* Callers dispatch only after releasing the booking lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis

from booking_engine.domain.entities import Booking
from booking_engine.domain.enums import Actor, NotificationKind

logger = logging.getLogger(__name__)


_TEMPLATES: dict[NotificationKind, tuple[str, str]] = {
    NotificationKind.OFFER: (
        "New ride request",
        "Booking #{booking_id} is waiting for you -- respond within {seconds}s",
    ),
    NotificationKind.OFFER_REVOKED: (
        "Request withdrawn",
        "Booking #{booking_id} is no longer available",
    ),
    NotificationKind.DRIVER_ASSIGNED: (
        "Driver found",
        "A driver accepted booking #{booking_id}",
    ),
    NotificationKind.JOB_CONFIRMED: (
        "Job confirmed",
        "You are assigned to booking #{booking_id}",
    ),
    NotificationKind.STATUS_CHANGED: (
        "Booking updated",
        "Booking #{booking_id} is now {status}",
    ),
    NotificationKind.DRIVER_ARRIVED: (
        "Driver has arrived",
        "Your driver is at the pickup point for booking #{booking_id}",
    ),
    NotificationKind.NO_DRIVER_FOUND: (
        "No driver found",
        "We could not find a driver for booking #{booking_id}",
    ),
    NotificationKind.BOOKING_CANCELLED: (
        "Booking cancelled",
        "Booking #{booking_id} was cancelled (fee {fee})",
    ),
    NotificationKind.JOB_CANCELLED: (
        "Job cancelled",
        "Booking #{booking_id} was cancelled by the {actor}",
    ),
    NotificationKind.NO_SHOW: (
        "Marked as no-show",
        "Booking #{booking_id} was closed as a no-show (fee {fee})",
    ),
    NotificationKind.DISPUTE_OPENED: (
        "Dispute received",
        "Your dispute for booking #{booking_id} is under review",
    ),
}


class NotificationDelivery(Protocol):
    async def send(self, user_id: int, message: dict[str, Any]) -> None: ...


class RedisNotificationDelivery:
    """Publishes each message as JSON on ``notifications:{user_id}``."""

    def __init__(self, client: aioredis.Redis, channel_prefix: str = "notifications"):
        self.redis = client
        self.channel_prefix = channel_prefix

    async def send(self, user_id: int, message: dict[str, Any]) -> None:
        await self.redis.publish(
            f"{self.channel_prefix}:{user_id}", json.dumps(message, default=str)
        )


@dataclass(frozen=True)
class NotificationEvent:
    kind: NotificationKind
    recipient_id: int
    booking: Booking
    actor: Actor = Actor.SYSTEM
    data: dict[str, Any] = field(default_factory=dict)


def format_message(event: NotificationEvent) -> dict[str, Any]:
    title, template = _TEMPLATES[event.kind]
    context = {
        "booking_id": event.booking.id,
        "status": event.booking.status.value,
        "actor": event.actor.value,
        "seconds": "",
        "fee": 0,
        **event.data,
    }
    return {
        "type": event.kind.value,
        "title": title,
        "message": template.format(**context),
        "data": {
            "booking_id": event.booking.id,
            "status": event.booking.status.value,
            **event.data,
        },
    }


class NotificationDispatcher:
    def __init__(self, delivery: NotificationDelivery):
        self.delivery = delivery
        self._pending: set[asyncio.Task] = set()

    def dispatch(
        self,
        kind: NotificationKind,
        booking: Booking,
        recipient_id: Optional[int],
        *,
        actor: Actor = Actor.SYSTEM,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        if recipient_id is None:
            return
        event = NotificationEvent(kind, recipient_id, booking, actor, data or {})
        task = asyncio.get_running_loop().create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def dispatch_all(self, events: list[NotificationEvent]) -> None:
        for e in events:
            self.dispatch(e.kind, e.booking, e.recipient_id, actor=e.actor, data=e.data)

    async def _deliver(self, event: NotificationEvent) -> bool:
        try:
            message = format_message(event)
            await self.delivery.send(event.recipient_id, message)
        except Exception:
            logger.exception(
                "Notification %s for booking %s to user %s failed",
                event.kind.value,
                event.booking.id,
                event.recipient_id,
            )
            return False
        return True

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown / tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
