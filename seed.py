"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - the default policy as its first stored version
  - 8 sample drivers (mix of available, busy, offline)
  - 6 sample bookings (pending, confirmed, assigned, completed, cancelled)
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from booking_engine.domain.entities import Booking, Cancellation, Driver, StatusChange
from booking_engine.domain.enums import (
    Actor,
    BookingStatus,
    CancellationReason,
    DriverStatus,
    FeeReason,
    PaymentStatus,
)
from booking_engine.infrastructure.database import async_session_factory, engine
from booking_engine.infrastructure.unit_of_work import SqlUnitOfWork


DRIVERS = [
    {"user_id": 101, "name": "Somchai Rattanakul", "status": DriverStatus.AVAILABLE, "idle_min": 45},
    {"user_id": 102, "name": "Niran Chaiyaporn", "status": DriverStatus.AVAILABLE, "idle_min": 30},
    {"user_id": 103, "name": "Ploy Siriwan", "status": DriverStatus.AVAILABLE, "idle_min": 12},
    {"user_id": 104, "name": "Anan Boonmee", "status": DriverStatus.AVAILABLE, "idle_min": 5},
    {"user_id": 105, "name": "Kanya Thongdee", "status": DriverStatus.BUSY, "idle_min": None},
    {"user_id": 106, "name": "Wichai Srisuk", "status": DriverStatus.OFFLINE, "idle_min": None},
    {"user_id": 107, "name": "Malee Kaewmanee", "status": DriverStatus.AVAILABLE, "idle_min": 60},
    {"user_id": 108, "name": "Prasert Wongsa", "status": DriverStatus.OFFLINE, "idle_min": None},
]


def _history(*steps):
    return [StatusChange(status=s, at=at, actor=actor) for s, at, actor in steps]


async def seed():
    now = datetime.now(timezone.utc)

    async with SqlUnitOfWork(async_session_factory) as uow:
        # Check if already seeded
        result = await uow.session.execute(text("SELECT count(*) FROM drivers"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Policy ────────────────────────────────────────────────────
        policy = await uow.policies.update({}, updated_by="seed")
        print(f"  Stored default policy v{policy.version}")

        # ── Drivers ───────────────────────────────────────────────────
        drivers = []
        for d in DRIVERS:
            idle = now - timedelta(minutes=d["idle_min"]) if d["idle_min"] else None
            drivers.append(
                await uow.drivers.add(
                    Driver(
                        user_id=d["user_id"],
                        name=d["name"],
                        status=d["status"],
                        idle_since=idle,
                    )
                )
            )
        print(f"  Created {len(drivers)} drivers")

        # ── Bookings ──────────────────────────────────────────────────
        busy = drivers[4]
        t0 = now - timedelta(hours=2)
        bookings = [
            Booking(
                passenger_id=1,
                status=BookingStatus.AWAITING_PAYMENT,
                pickup_at=now + timedelta(hours=3),
                created_at=now,
                total_cost=420.0,
                status_history=_history((BookingStatus.AWAITING_PAYMENT, now, Actor.PASSENGER)),
            ),
            Booking(
                passenger_id=2,
                status=BookingStatus.PENDING,
                payment_status=PaymentStatus.PAID,
                pickup_at=now + timedelta(hours=1),
                created_at=now,
                total_cost=350.0,
                status_history=_history((BookingStatus.PENDING, now, Actor.PASSENGER)),
            ),
            Booking(
                passenger_id=3,
                status=BookingStatus.CONFIRMED,
                payment_status=PaymentStatus.PAID,
                pickup_at=now + timedelta(minutes=40),
                created_at=now,
                total_cost=280.0,
                status_history=_history(
                    (BookingStatus.PENDING, now, Actor.PASSENGER),
                    (BookingStatus.CONFIRMED, now, Actor.PASSENGER),
                ),
            ),
            Booking(
                passenger_id=4,
                status=BookingStatus.DRIVER_ASSIGNED,
                payment_status=PaymentStatus.PAID,
                pickup_at=now + timedelta(minutes=20),
                created_at=now - timedelta(minutes=15),
                total_cost=510.0,
                assigned_driver_id=busy.id,
                assigned_at=now - timedelta(minutes=10),
                status_history=_history(
                    (BookingStatus.PENDING, now - timedelta(minutes=15), Actor.PASSENGER),
                    (BookingStatus.CONFIRMED, now - timedelta(minutes=14), Actor.PASSENGER),
                    (BookingStatus.DRIVER_ASSIGNED, now - timedelta(minutes=10), Actor.DRIVER),
                ),
            ),
            Booking(
                passenger_id=5,
                status=BookingStatus.COMPLETED,
                payment_status=PaymentStatus.PAID,
                pickup_at=t0,
                created_at=t0 - timedelta(minutes=30),
                total_cost=640.0,
                completed_at=t0 + timedelta(minutes=50),
                status_history=_history(
                    (BookingStatus.PENDING, t0 - timedelta(minutes=30), Actor.PASSENGER),
                    (BookingStatus.CONFIRMED, t0 - timedelta(minutes=29), Actor.PASSENGER),
                    (BookingStatus.DRIVER_ASSIGNED, t0 - timedelta(minutes=20), Actor.DRIVER),
                    (BookingStatus.DRIVER_EN_ROUTE, t0 - timedelta(minutes=15), Actor.DRIVER),
                    (BookingStatus.IN_PROGRESS, t0, Actor.DRIVER),
                    (BookingStatus.COMPLETED, t0 + timedelta(minutes=50), Actor.DRIVER),
                ),
            ),
            Booking(
                passenger_id=6,
                status=BookingStatus.CANCELLED,
                payment_status=PaymentStatus.PAID,
                pickup_at=t0,
                created_at=t0 - timedelta(minutes=30),
                total_cost=300.0,
                cancellation=Cancellation(
                    reason=CancellationReason.CHANGE_OF_PLANS.value,
                    at=t0 - timedelta(minutes=25),
                    cancelled_by=Actor.PASSENGER,
                    fee_charged=0.0,
                    fee_waived=False,
                    waived_reason_code=FeeReason.NO_DRIVER_ASSIGNED.value,
                ),
                status_history=_history(
                    (BookingStatus.PENDING, t0 - timedelta(minutes=30), Actor.PASSENGER),
                    (BookingStatus.CANCELLED, t0 - timedelta(minutes=25), Actor.PASSENGER),
                ),
            ),
        ]
        for b in bookings:
            await uow.bookings.add(b)
        print(f"  Created {len(bookings)} bookings")

        await uow.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
