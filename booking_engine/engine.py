"""
Engine wiring.

``BookingEngine`` bundles the dispatch scheduler, the lifecycle commands
and the policy store behind one object that the API and the workers share.
``build_engine`` takes every collaborator explicitly (tests pass in-memory
ones and a fake clock); ``build_default_engine`` wires the production
adapters from ``settings``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from booking_engine.config import settings
from booking_engine.domain.clock import Clock, SystemClock
from booking_engine.domain.policy import Policy
from booking_engine.infrastructure.locks import BookingLocks, RedisBookingLocks
from booking_engine.infrastructure.unit_of_work import (
    UnitOfWorkFactory,
    sql_unit_of_work_factory,
)
from booking_engine.services.dispatch import DispatchScheduler
from booking_engine.services.lifecycle import LifecycleService
from booking_engine.services.notifications import (
    NotificationDelivery,
    NotificationDispatcher,
    RedisNotificationDelivery,
)

logger = logging.getLogger(__name__)


@dataclass
class BookingEngine:
    uow_factory: UnitOfWorkFactory
    clock: Clock
    notifier: NotificationDispatcher
    scheduler: DispatchScheduler
    lifecycle: LifecycleService

    async def current_policy(self) -> Policy:
        async with self.uow_factory() as uow:
            return await uow.policies.current()

    async def update_policy(self, changes: dict[str, Any], updated_by: str) -> Policy:
        """Store a new policy version; raises ``PolicyOutOfRange`` and stores nothing."""
        async with self.uow_factory() as uow:
            policy = await uow.policies.update(changes, updated_by)
            await uow.commit()
        logger.info("Policy v%d stored by %s", policy.version, updated_by)
        return policy

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await self.notifier.drain()


def build_engine(
    uow_factory: UnitOfWorkFactory,
    locks: BookingLocks,
    delivery: NotificationDelivery,
    clock: Optional[Clock] = None,
) -> BookingEngine:
    clock = clock or SystemClock()
    notifier = NotificationDispatcher(delivery)
    scheduler = DispatchScheduler(uow_factory, locks, notifier, clock)
    lifecycle = LifecycleService(uow_factory, locks, scheduler, notifier, clock)
    return BookingEngine(
        uow_factory=uow_factory,
        clock=clock,
        notifier=notifier,
        scheduler=scheduler,
        lifecycle=lifecycle,
    )


def build_default_engine() -> BookingEngine:
    from booking_engine.infrastructure.database import async_session_factory
    from booking_engine.infrastructure.redis_client import get_redis

    redis = get_redis()
    return build_engine(
        sql_unit_of_work_factory(async_session_factory),
        RedisBookingLocks(
            redis,
            ttl_seconds=settings.booking_lock_ttl_seconds,
            wait_seconds=settings.booking_lock_wait_seconds,
        ),
        RedisNotificationDelivery(redis),
    )
