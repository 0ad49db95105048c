"""
Concurrency safety tests.

Demonstrates:
1. Distributed lock prevents simultaneous acquire and only releases its own token.
2. Per-booking locks serialise work on one booking, not across bookings,
   and the local lock table forgets a key once nobody holds it.
3. A busy booking lock surfaces as 503 instead of a lost update.
4. The offer sweeper runs on one instance at a time.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from booking_engine.api.app import create_app
from booking_engine.api.middleware import limiter
from booking_engine.engine import build_engine
from booking_engine.infrastructure.locks import (
    DistributedLock,
    LocalBookingLocks,
    LockNotAcquired,
    RedisBookingLocks,
)
from booking_engine.workers.offer_sweeper import run_sweep_cycle
from tests.fakes import InMemoryUnitOfWork, RecordingDelivery


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with(
            "lock:test-key", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_release_checks_own_token(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        await lock.acquire()
        await lock.release()

        mock_redis.eval.assert_called_once()
        _, numkeys, key, token = mock_redis.eval.call_args.args
        assert (numkeys, key, token) == (1, "lock:test-key", lock.token)

    @pytest.mark.asyncio
    async def test_blocking_acquire_retries_until_free(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(side_effect=[None, None, True])

        lock = DistributedLock(
            mock_redis, "test-key", wait_seconds=1.0, retry_interval=0.001
        )
        assert await lock.acquire_blocking() is True
        assert mock_redis.set.await_count == 3

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        with pytest.raises(LockNotAcquired, match="Could not acquire lock"):
            async with lock:
                pass
        mock_redis.eval.assert_not_called()

    def test_booking_locks_use_per_booking_keys(self):
        locks = RedisBookingLocks(AsyncMock(), ttl_seconds=20, wait_seconds=2)
        lock = locks.hold(17)
        assert lock.key == "lock:booking:17"
        assert lock.ttl == 20
        assert lock.wait == 2

    def test_passenger_locks_use_their_own_keys(self):
        locks = RedisBookingLocks(AsyncMock())
        assert locks.hold_passenger(5).key == "lock:passenger:5"
        assert locks.hold(5).key != locks.hold_passenger(5).key


class TestLocalBookingLocks:
    @pytest.mark.asyncio
    async def test_same_booking_is_serialised(self):
        locks = LocalBookingLocks()
        trace = []

        async def worker(name):
            async with locks.hold(1):
                trace.append(f"{name}-in")
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                trace.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert trace == ["a-in", "a-out", "b-in", "b-out"]
        assert locks.active_keys == set()

    @pytest.mark.asyncio
    async def test_different_bookings_interleave(self):
        locks = LocalBookingLocks()
        trace = []

        async def worker(booking_id):
            async with locks.hold(booking_id):
                trace.append(f"{booking_id}-in")
                await asyncio.sleep(0)
                trace.append(f"{booking_id}-out")

        await asyncio.gather(worker(1), worker(2))
        assert trace[:2] == ["1-in", "2-in"]
        assert locks.active_keys == set()

    @pytest.mark.asyncio
    async def test_lock_kept_while_someone_waits(self):
        locks = LocalBookingLocks()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks.hold(3):
                entered.set()
                await release.wait()

        async def waiter():
            await entered.wait()
            async with locks.hold(3):
                pass

        tasks = [asyncio.create_task(holder()), asyncio.create_task(waiter())]
        await entered.wait()
        await asyncio.sleep(0)
        assert locks.active_keys == {"booking:3"}

        release.set()
        await asyncio.gather(*tasks)
        assert locks.active_keys == set()

    @pytest.mark.asyncio
    async def test_passenger_and_booking_with_same_id_do_not_block(self):
        locks = LocalBookingLocks()
        async with locks.hold(9):
            async with locks.hold_passenger(9):
                assert locks.active_keys == {"booking:9", "passenger:9"}
        assert locks.active_keys == set()


@pytest.mark.asyncio
async def test_busy_booking_lock_is_503(store, factory, clock):
    redis = AsyncMock()
    redis.set = AsyncMock(return_value=None)
    engine = build_engine(
        lambda: InMemoryUnitOfWork(store),
        RedisBookingLocks(redis, wait_seconds=0),
        RecordingDelivery(),
        clock,
    )
    booking = await factory.booking()

    limiter.reset()
    app = create_app(engine=engine, run_workers=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        resp = await ac.post(f"/api/v1/bookings/{booking.id}/cancel", json={})

    assert resp.status_code == 503
    assert store.booking(booking.id).cancellation is None
    await engine.shutdown()


class TestOfferSweeper:
    @pytest.mark.asyncio
    async def test_skips_when_another_instance_sweeps(self):
        redis = AsyncMock()
        redis.set = AsyncMock(return_value=None)
        engine = MagicMock()
        engine.scheduler.expire_overdue_offers = AsyncMock(return_value=3)

        assert await run_sweep_cycle(engine, redis) == 0
        engine.scheduler.expire_overdue_offers.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_runs_and_releases_lock(self):
        redis = AsyncMock()
        redis.set = AsyncMock(return_value=True)
        redis.eval = AsyncMock(return_value=1)
        engine = MagicMock()
        engine.scheduler.expire_overdue_offers = AsyncMock(return_value=2)

        assert await run_sweep_cycle(engine, redis) == 2
        redis.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lock_released_when_sweep_fails(self):
        redis = AsyncMock()
        redis.set = AsyncMock(return_value=True)
        engine = MagicMock()
        engine.scheduler.expire_overdue_offers = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await run_sweep_cycle(engine, redis)
        redis.eval.assert_awaited_once()
