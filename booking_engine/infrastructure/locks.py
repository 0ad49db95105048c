"""
Per-booking mutual exclusion.

Every read-modify-write of one booking happens while holding that
booking's lock, so a passenger cancel racing a driver accept can never both
commit.  Intake holds a per-passenger lock the same way.  Two providers
share the ``hold(booking_id)`` / ``hold_passenger(passenger_id)`` interface:

* ``LocalBookingLocks`` -- one ``asyncio.Lock`` per booking or passenger,
  enough for a single API process.
* ``RedisBookingLocks`` -- one ``DistributedLock`` per key for multiple
  API / worker processes.

``DistributedLock`` uses SET NX EX for acquire and a Lua script for atomic
check-and-delete on release.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Protocol

import redis.asyncio as aioredis


class LockNotAcquired(RuntimeError):
    """Raised when a lock could not be taken within the wait budget."""


class DistributedLock:
    _RELEASE_LUA = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        client: aioredis.Redis,
        key: str,
        ttl_seconds: int = 30,
        wait_seconds: float = 0.0,
        retry_interval: float = 0.05,
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.wait = wait_seconds
        self.retry_interval = retry_interval
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire once. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def acquire_blocking(self) -> bool:
        """Retry until acquired or ``wait_seconds`` elapsed."""
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + self.wait
        while True:
            if await self.acquire():
                return True
            if loop.time() >= give_up_at:
                return False
            await asyncio.sleep(self.retry_interval)

    async def release(self) -> None:
        """Release only if we still own the lock (atomic via Lua)."""
        await self.redis.eval(self._RELEASE_LUA, 1, self.key, self.token)

    # context-manager support
    async def __aenter__(self):
        acquired = await self.acquire_blocking()
        if not acquired:
            raise LockNotAcquired(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *args):
        await self.release()


class BookingLocks(Protocol):
    def hold(self, booking_id: int) -> AsyncContextManager: ...

    def hold_passenger(self, passenger_id: int) -> AsyncContextManager: ...


class LocalBookingLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def hold(self, booking_id: int) -> AsyncContextManager:
        return self._hold(f"booking:{booking_id}")

    def hold_passenger(self, passenger_id: int) -> AsyncContextManager:
        return self._hold(f"passenger:{passenger_id}")

    @property
    def active_keys(self) -> set[str]:
        return set(self._locks)

    @asynccontextmanager
    async def _hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class RedisBookingLocks:
    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = 30,
        wait_seconds: float = 10.0,
    ):
        self.redis = client
        self.ttl = ttl_seconds
        self.wait = wait_seconds

    def hold(self, booking_id: int) -> DistributedLock:
        return DistributedLock(
            self.redis,
            f"booking:{booking_id}",
            ttl_seconds=self.ttl,
            wait_seconds=self.wait,
        )

    def hold_passenger(self, passenger_id: int) -> DistributedLock:
        return DistributedLock(
            self.redis,
            f"passenger:{passenger_id}",
            ttl_seconds=self.ttl,
            wait_seconds=self.wait,
        )
