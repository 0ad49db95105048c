"""
Unit of Work over one ``AsyncSession``.

Groups the repositories the engine needs so that a booking transition and
the driver-status change that accompanies it commit (or roll back)
together.  Nothing is committed unless ``commit()`` is called; leaving the
block on an exception rolls back.
"""

from __future__ import annotations

from typing import Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .repositories import (
    BookingRepository,
    DispatchAttemptRepository,
    DisputeRepository,
    DriverRepository,
    PolicyRepository,
)


class UnitOfWork(Protocol):
    bookings: BookingRepository
    drivers: DriverRepository
    attempts: DispatchAttemptRepository
    policies: PolicyRepository
    disputes: DisputeRepository

    async def __aenter__(self) -> "UnitOfWork": ...

    async def __aexit__(self, *exc) -> None: ...

    async def commit(self) -> None: ...


UnitOfWorkFactory = Callable[[], UnitOfWork]


class SqlUnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self.session: AsyncSession | None = None

    async def __aenter__(self) -> "SqlUnitOfWork":
        self.session = self._session_factory()
        self.bookings = BookingRepository(self.session)
        self.drivers = DriverRepository(self.session)
        self.attempts = DispatchAttemptRepository(self.session)
        self.policies = PolicyRepository(self.session)
        self.disputes = DisputeRepository(self.session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        assert self.session is not None
        try:
            if exc_type is not None:
                await self.session.rollback()
        finally:
            await self.session.close()
            self.session = None

    async def commit(self) -> None:
        assert self.session is not None
        await self.session.commit()


def sql_unit_of_work_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> UnitOfWorkFactory:
    return lambda: SqlUnitOfWork(session_factory)
