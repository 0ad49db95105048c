"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and speaks in
domain entities, never in ORM rows.  ``BookingRepository.save`` is
optimistic: it only writes if the stored ``version`` still matches the one
that was read, otherwise ``StaleWrite`` is raised and the caller re-reads.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Collection, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    BookingModel,
    DispatchAttemptModel,
    DisputeModel,
    DriverModel,
    PolicyModel,
)
from booking_engine.domain.entities import (
    Booking,
    Cancellation,
    DispatchAttempt,
    Dispute,
    Driver,
    StatusChange,
)
from booking_engine.domain.enums import (
    Actor,
    AttemptOutcome,
    BookingStatus,
    DRIVER_HELD_STATUSES,
    DriverStatus,
    TERMINAL_STATUSES,
)
from booking_engine.domain.errors import StaleWrite
from booking_engine.domain.policy import Policy


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything in the engine is UTC-aware."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Mapping helpers ───────────────────────────────────────────────────


def _history_to_json(history: list[StatusChange]) -> list[dict[str, Any]]:
    return [
        {
            "status": h.status.value,
            "at": h.at.isoformat(),
            "actor": h.actor.value,
            "note": h.note,
        }
        for h in history
    ]


def _history_from_json(rows: Optional[list[dict[str, Any]]]) -> list[StatusChange]:
    return [
        StatusChange(
            status=BookingStatus(r["status"]),
            at=_aware(datetime.fromisoformat(r["at"])),
            actor=Actor(r.get("actor", Actor.SYSTEM.value)),
            note=r.get("note"),
        )
        for r in rows or []
    ]


def booking_from_row(row: BookingModel) -> Booking:
    cancellation = None
    if row.cancelled_at is not None:
        cancellation = Cancellation(
            reason=row.cancellation_reason,
            at=_aware(row.cancelled_at),
            cancelled_by=Actor(row.cancelled_by or Actor.SYSTEM.value),
            fee_charged=row.cancellation_fee or 0.0,
            fee_waived=bool(row.cancellation_fee_waived),
            waived_reason_code=row.waived_reason_code,
            driver_payout=row.cancellation_driver_payout or 0.0,
            driver_id=row.cancellation_driver_id,
        )
    return Booking(
        id=row.id,
        passenger_id=row.passenger_id,
        status=BookingStatus(row.status),
        payment_status=row.payment_status,
        pickup_at=_aware(row.pickup_at),
        created_at=_aware(row.created_at),
        total_cost=row.total_cost,
        assigned_driver_id=row.assigned_driver_id,
        assigned_at=_aware(row.assigned_at),
        driver_arrived_at=_aware(row.driver_arrived_at),
        completed_at=_aware(row.completed_at),
        rematch_count=row.rematch_count,
        search_started_at=_aware(row.search_started_at),
        cancellation=cancellation,
        has_dispute=row.has_dispute,
        status_history=_history_from_json(row.status_history),
        version=row.version,
    )


def _booking_values(booking: Booking) -> dict[str, Any]:
    c = booking.cancellation
    return {
        "passenger_id": booking.passenger_id,
        "status": booking.status,
        "payment_status": booking.payment_status,
        "pickup_at": booking.pickup_at,
        "total_cost": booking.total_cost,
        "assigned_driver_id": booking.assigned_driver_id,
        "assigned_at": booking.assigned_at,
        "driver_arrived_at": booking.driver_arrived_at,
        "completed_at": booking.completed_at,
        "rematch_count": booking.rematch_count,
        "search_started_at": booking.search_started_at,
        "cancellation_reason": c.reason if c else None,
        "cancelled_at": c.at if c else None,
        "cancelled_by": c.cancelled_by.value if c else None,
        "cancellation_fee": c.fee_charged if c else None,
        "cancellation_fee_waived": c.fee_waived if c else None,
        "waived_reason_code": c.waived_reason_code if c else None,
        "cancellation_driver_payout": c.driver_payout if c else None,
        "cancellation_driver_id": c.driver_id if c else None,
        "has_dispute": booking.has_dispute,
        "status_history": _history_to_json(booking.status_history),
    }


def driver_from_row(row: DriverModel) -> Driver:
    return Driver(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        status=DriverStatus(row.status),
        idle_since=_aware(row.idle_since),
        total_trips=row.total_trips,
        total_earnings=row.total_earnings,
    )


def attempt_from_row(row: DispatchAttemptModel) -> DispatchAttempt:
    return DispatchAttempt(
        id=row.id,
        booking_id=row.booking_id,
        driver_id=row.driver_id,
        offered_at=_aware(row.offered_at),
        deadline=_aware(row.deadline),
        outcome=AttemptOutcome(row.outcome) if row.outcome else None,
        responded_at=_aware(row.responded_at),
    )


# ── Repositories ──────────────────────────────────────────────────────


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, booking: Booking) -> Booking:
        row = BookingModel(**_booking_values(booking), version=0)
        if booking.created_at is not None:
            row.created_at = booking.created_at
        self.session.add(row)
        await self.session.flush()
        await self.session.refresh(row)
        return booking_from_row(row)

    async def get(self, booking_id: int) -> Optional[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.id == booking_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return booking_from_row(row) if row else None

    async def save(self, booking: Booking) -> Booking:
        """Write *booking* if nobody else saved it since it was read."""
        result = await self.session.execute(
            update(BookingModel)
            .where(
                BookingModel.id == booking.id,
                BookingModel.version == booking.version,
            )
            .values(**_booking_values(booking), version=booking.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleWrite(booking.id)
        booking.version += 1
        return booking

    async def list_active_for_passenger(self, passenger_id: int) -> list[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(
                BookingModel.passenger_id == passenger_id,
                BookingModel.status.not_in(list(TERMINAL_STATUSES)),
            )
            .order_by(BookingModel.id)
        )
        return [booking_from_row(r) for r in result.scalars().all()]

    async def count_cancellations_since(
        self, passenger_id: int, since: datetime
    ) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(BookingModel)
            .where(
                BookingModel.passenger_id == passenger_id,
                BookingModel.cancelled_by == Actor.PASSENGER.value,
                BookingModel.cancelled_at >= since,
            )
        )
        return result.scalar() or 0

    async def count_held_by_driver(self, driver_id: int) -> int:
        """Bookings that still keep *driver_id* on a job."""
        result = await self.session.execute(
            select(func.count())
            .select_from(BookingModel)
            .where(
                BookingModel.assigned_driver_id == driver_id,
                BookingModel.status.in_(list(DRIVER_HELD_STATUSES)),
            )
        )
        return result.scalar() or 0


class DriverRepository:
    """Driver Registry."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, driver: Driver) -> Driver:
        row = DriverModel(
            user_id=driver.user_id,
            name=driver.name,
            status=driver.status,
            idle_since=driver.idle_since,
            total_trips=driver.total_trips,
            total_earnings=driver.total_earnings,
        )
        self.session.add(row)
        await self.session.flush()
        return driver_from_row(row)

    async def get(self, driver_id: int) -> Optional[Driver]:
        row = await self.session.get(DriverModel, driver_id, populate_existing=True)
        return driver_from_row(row) if row else None

    async def list_available(self, include_busy: bool = False) -> list[Driver]:
        statuses = [DriverStatus.AVAILABLE]
        if include_busy:
            statuses.append(DriverStatus.BUSY)
        result = await self.session.execute(
            select(DriverModel)
            .where(DriverModel.status.in_(statuses))
            .order_by(DriverModel.id)
        )
        return [driver_from_row(r) for r in result.scalars().all()]

    async def set_status(
        self,
        driver_id: int,
        status: DriverStatus,
        at: Optional[datetime] = None,
        *,
        trip_completed: bool = False,
        unless: Optional[DriverStatus] = None,
        only_if: Optional[Collection[DriverStatus]] = None,
    ) -> bool:
        """Returns False when nothing changed.

        That is an unknown driver, one in status *unless*, or one whose
        status is not in *only_if*.  Check and write are one conditional
        UPDATE.
        """
        values: dict[str, Any] = {"status": status}
        if status == DriverStatus.AVAILABLE and at is not None:
            values["idle_since"] = at
        if trip_completed:
            values["total_trips"] = DriverModel.total_trips + 1
        stmt = update(DriverModel).where(DriverModel.id == driver_id)
        if unless is not None:
            stmt = stmt.where(DriverModel.status != unless)
        if only_if is not None:
            stmt = stmt.where(DriverModel.status.in_(list(only_if)))
        result = await self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def credit_earnings(self, driver_id: int, amount: float) -> None:
        if amount <= 0:
            return
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(total_earnings=DriverModel.total_earnings + amount)
            .execution_options(synchronize_session=False)
        )


class DispatchAttemptRepository:
    """Audit log of offers; also the durable record of offer deadlines."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, attempt: DispatchAttempt) -> DispatchAttempt:
        row = DispatchAttemptModel(
            booking_id=attempt.booking_id,
            driver_id=attempt.driver_id,
            offered_at=attempt.offered_at,
            deadline=attempt.deadline,
        )
        self.session.add(row)
        await self.session.flush()
        return attempt_from_row(row)

    async def get(self, attempt_id: int) -> Optional[DispatchAttempt]:
        row = await self.session.get(
            DispatchAttemptModel, attempt_id, populate_existing=True
        )
        return attempt_from_row(row) if row else None

    async def record_outcome(
        self, attempt_id: int, outcome: AttemptOutcome, at: datetime
    ) -> bool:
        """Settle an outstanding attempt.  Returns False if already settled."""
        result = await self.session.execute(
            update(DispatchAttemptModel)
            .where(
                DispatchAttemptModel.id == attempt_id,
                DispatchAttemptModel.outcome.is_(None),
            )
            .values(outcome=outcome, responded_at=at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_for_booking(
        self, booking_id: int, since: Optional[datetime] = None
    ) -> list[DispatchAttempt]:
        query = select(DispatchAttemptModel).where(
            DispatchAttemptModel.booking_id == booking_id
        )
        if since is not None:
            query = query.where(DispatchAttemptModel.offered_at >= since)
        result = await self.session.execute(query.order_by(DispatchAttemptModel.id))
        return [attempt_from_row(r) for r in result.scalars().all()]

    async def open_for_booking(self, booking_id: int) -> Optional[DispatchAttempt]:
        result = await self.session.execute(
            select(DispatchAttemptModel)
            .where(
                DispatchAttemptModel.booking_id == booking_id,
                DispatchAttemptModel.outcome.is_(None),
            )
            .order_by(DispatchAttemptModel.id.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return attempt_from_row(row) if row else None

    async def drivers_with_open_offers(self) -> set[int]:
        result = await self.session.execute(
            select(DispatchAttemptModel.driver_id).where(
                DispatchAttemptModel.outcome.is_(None)
            )
        )
        return set(result.scalars().all())

    async def list_overdue(self, now: datetime) -> list[DispatchAttempt]:
        result = await self.session.execute(
            select(DispatchAttemptModel)
            .where(
                DispatchAttemptModel.outcome.is_(None),
                DispatchAttemptModel.deadline <= now,
            )
            .order_by(DispatchAttemptModel.deadline)
        )
        return [attempt_from_row(r) for r in result.scalars().all()]


class PolicyRepository:
    """Policy Store: latest version row wins; no row means defaults."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def current(self) -> Policy:
        """Validated snapshot.  Raises ``PolicyOutOfRange`` on a bad stored row."""
        result = await self.session.execute(
            select(PolicyModel).order_by(PolicyModel.version.desc()).limit(1)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return Policy()
        return Policy.from_mapping({**row.data, "version": row.version})

    async def update(self, changes: dict[str, Any], updated_by: str) -> Policy:
        policy = (await self.current()).updated(**changes)
        values = policy.to_dict()
        version = values.pop("version")
        self.session.add(PolicyModel(version=version, data=values, updated_by=updated_by))
        await self.session.flush()
        return policy


class DisputeRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, dispute: Dispute) -> Dispute:
        row = DisputeModel(
            booking_id=dispute.booking_id,
            passenger_id=dispute.passenger_id,
            driver_id=dispute.driver_id,
            reason=dispute.reason,
            description=dispute.description,
            status=dispute.status,
            fee_under_dispute=dispute.fee_under_dispute,
            created_at=dispute.created_at,
        )
        self.session.add(row)
        await self.session.flush()
        dispute.id = row.id
        return dispute

    async def get_for_booking(self, booking_id: int) -> Optional[Dispute]:
        result = await self.session.execute(
            select(DisputeModel).where(DisputeModel.booking_id == booking_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return Dispute(
            id=row.id,
            booking_id=row.booking_id,
            passenger_id=row.passenger_id,
            driver_id=row.driver_id,
            reason=row.reason,
            description=row.description,
            status=row.status,
            fee_under_dispute=row.fee_under_dispute,
            created_at=_aware(row.created_at),
        )
