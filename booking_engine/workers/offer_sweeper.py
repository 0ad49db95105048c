"""
Background Offer Sweeper
========================

Runs every ``SWEEPER_INTERVAL_SECONDS`` (default 10 s).

Offer deadlines are enforced by each booking's in-memory dispatch process.
If that process died with its API instance (crash, redeploy) the offer is
left outstanding in ``dispatch_attempts``.  Each cycle this worker:

1. Lists outstanding attempts whose deadline has passed.
2. Skips the ones a live process in this instance still owns.
3. Records them ``expired`` (counted as a rematch) under the booking lock.
4. Resumes the search for bookings that are still ``confirmed``.

A **Redis distributed lock** ensures only one instance sweeps at a time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis

from booking_engine.config import settings
from booking_engine.engine import BookingEngine
from booking_engine.infrastructure.locks import DistributedLock
from booking_engine.infrastructure.redis_client import get_redis

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_sweeper_loop(
    engine: BookingEngine, redis: Optional[aioredis.Redis] = None
) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(engine, redis or get_redis()))
    logger.info(
        "Offer sweeper started (interval=%ds)", settings.sweeper_interval_seconds
    )


async def stop_sweeper_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Offer sweeper stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(engine: BookingEngine, redis: aioredis.Redis) -> None:
    """Periodic loop: run a sweep then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_sweep_cycle(engine, redis)
        except Exception:
            logger.exception("Unhandled error in offer sweep")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.sweeper_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass


async def run_sweep_cycle(engine: BookingEngine, redis: aioredis.Redis) -> int:
    """Execute one sweep.  Returns the number of offers expired."""
    lock = DistributedLock(redis, "offer_sweeper", ttl_seconds=60)

    if not await lock.acquire():
        logger.debug("Lock held by another worker - skipping sweep")
        return 0

    try:
        return await engine.scheduler.expire_overdue_offers(
            grace_seconds=settings.offer_orphan_grace_seconds
        )
    finally:
        await lock.release()
