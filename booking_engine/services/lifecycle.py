"""
Booking lifecycle commands.

Everything that changes a booking outside of dispatch: intake, payment,
confirmation, the driver-side trip steps, cancellation and no-show fees,
refunds, disputes and administrative overrides.

Each command runs under the booking lock in one unit of work, goes through
``request_transition`` for every status change, and dispatches its
notifications only after the lock is released.
"""

from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from booking_engine.domain.clock import Clock
from booking_engine.domain.entities import (
    Booking,
    Cancellation,
    Dispute,
    Driver,
    StatusChange,
)
from booking_engine.domain.enums import (
    Actor,
    BookingStatus,
    CancellationReason,
    DisputeReason,
    DriverStatus,
    DRIVER_HELD_STATUSES,
    FeeReason,
    NotificationKind,
    PaymentStatus,
)
from booking_engine.domain.errors import (
    BookingNotFound,
    DisputeNotAllowed,
    DriverNotFound,
    DriverUnavailable,
    InvalidTransition,
    NoShowNotEligible,
)
from booking_engine.domain.fees import (
    DISPUTABLE_STATUSES,
    FeeQuote,
    check_active_booking_limit,
    check_cancellation_limit,
    compute_cancellation_fee,
    compute_no_show_fee,
    dispute_window_open,
)
from booking_engine.domain.transitions import request_transition
from booking_engine.infrastructure.locks import BookingLocks
from booking_engine.infrastructure.unit_of_work import UnitOfWork, UnitOfWorkFactory
from booking_engine.services.dispatch import DispatchScheduler, assignable_statuses
from booking_engine.services.notifications import NotificationDispatcher, NotificationEvent

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
DISPUTE_DESCRIPTION_MIN = 10
DISPUTE_DESCRIPTION_MAX = 1000


def clean_description(text: str) -> str:
    """Strip HTML tags and cap the length of free-text dispute input."""
    return _TAG_RE.sub("", text or "").strip()[:DISPUTE_DESCRIPTION_MAX]


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


class LifecycleService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        locks: BookingLocks,
        scheduler: DispatchScheduler,
        notifier: NotificationDispatcher,
        clock: Clock,
    ):
        self.uow_factory = uow_factory
        self.locks = locks
        self.scheduler = scheduler
        self.notifier = notifier
        self.clock = clock

    @asynccontextmanager
    async def _booking(self, booking_id: int) -> AsyncIterator[tuple[UnitOfWork, Booking]]:
        async with self.locks.hold(booking_id):
            async with self.uow_factory() as uow:
                booking = await uow.bookings.get(booking_id)
                if booking is None:
                    raise BookingNotFound(booking_id)
                yield uow, booking

    # ── Queries ───────────────────────────────────────────────────────

    async def get_booking(self, booking_id: int) -> Booking:
        async with self.uow_factory() as uow:
            booking = await uow.bookings.get(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    async def list_attempts(self, booking_id: int):
        async with self.uow_factory() as uow:
            if await uow.bookings.get(booking_id) is None:
                raise BookingNotFound(booking_id)
            return await uow.attempts.list_for_booking(booking_id)

    # ── Intake / payment ──────────────────────────────────────────────

    async def admit_booking(
        self,
        passenger_id: int,
        pickup_at: datetime,
        total_cost: float,
        *,
        awaiting_payment: bool = False,
    ) -> Booking:
        """Create a booking unless the passenger already holds too many active ones."""
        now = self.clock.now()
        status = BookingStatus.AWAITING_PAYMENT if awaiting_payment else BookingStatus.PENDING
        async with self.locks.hold_passenger(passenger_id), self.uow_factory() as uow:
            policy = await uow.policies.current()
            active = await uow.bookings.list_active_for_passenger(passenger_id)
            error = check_active_booking_limit(len(active), policy)
            if error is not None:
                raise error
            booking = await uow.bookings.add(
                Booking(
                    passenger_id=passenger_id,
                    status=status,
                    pickup_at=pickup_at,
                    created_at=now,
                    total_cost=total_cost,
                    status_history=[StatusChange(status, now, Actor.PASSENGER, "created")],
                )
            )
            await uow.commit()
        logger.info("Booking %s created for passenger %s", booking.id, passenger_id)
        return booking

    async def record_payment(self, booking_id: int, payment_status: PaymentStatus) -> Booking:
        now = self.clock.now()
        async with self._booking(booking_id) as (uow, booking):
            booking.payment_status = PaymentStatus(payment_status)
            if (
                booking.payment_status == PaymentStatus.PAID
                and booking.status == BookingStatus.AWAITING_PAYMENT
            ):
                booking = request_transition(
                    booking,
                    BookingStatus.PENDING,
                    at=now,
                    actor=Actor.SYSTEM,
                    note="payment received",
                ).unwrap()
            saved = await uow.bookings.save(booking)
            await uow.commit()
        return saved

    async def confirm(self, booking_id: int, actor: Actor = Actor.PASSENGER) -> Booking:
        return await self._advance(booking_id, BookingStatus.CONFIRMED, actor)

    # ── Driver-side trip steps ────────────────────────────────────────

    async def start_en_route(self, booking_id: int, driver_id: int) -> Booking:
        return await self._advance(
            booking_id, BookingStatus.DRIVER_EN_ROUTE, Actor.DRIVER, driver_id=driver_id
        )

    async def start_trip(self, booking_id: int, driver_id: int) -> Booking:
        return await self._advance(
            booking_id, BookingStatus.IN_PROGRESS, Actor.DRIVER, driver_id=driver_id
        )

    async def mark_driver_arrived(self, booking_id: int, driver_id: int) -> Booking:
        """Stamp the arrival time; the no-show wait starts here."""
        now = self.clock.now()
        async with self._booking(booking_id) as (uow, booking):
            if booking.status != BookingStatus.DRIVER_EN_ROUTE:
                raise InvalidTransition(
                    booking.status,
                    BookingStatus.DRIVER_EN_ROUTE,
                    "arrival can only be reported while en route",
                )
            self._check_driver(booking, driver_id)
            if booking.driver_arrived_at is not None:
                return booking
            booking.driver_arrived_at = now
            saved = await uow.bookings.save(booking)
            await uow.commit()
        self.notifier.dispatch(
            NotificationKind.DRIVER_ARRIVED, saved, saved.passenger_id, actor=Actor.DRIVER
        )
        return saved

    async def complete(self, booking_id: int, driver_id: int) -> Booking:
        now = self.clock.now()
        async with self._booking(booking_id) as (uow, booking):
            completed = request_transition(
                booking,
                BookingStatus.COMPLETED,
                at=now,
                actor=Actor.DRIVER,
                completed_at=now,
            ).unwrap()
            self._check_driver(booking, driver_id)
            saved = await uow.bookings.save(completed)
            await self._release_driver(uow, driver_id, now, trip_completed=True)
            await uow.drivers.credit_earnings(driver_id, booking.total_cost)
            await uow.commit()
        logger.info("Booking %s completed by driver %s", booking_id, driver_id)
        self._notify_status(saved, Actor.DRIVER)
        return saved

    async def report_no_show(self, booking_id: int, driver_id: int) -> Booking:
        """Close the booking as a no-show once the wait time after arrival passed."""
        now = self.clock.now()
        async with self._booking(booking_id) as (uow, booking):
            if booking.status != BookingStatus.DRIVER_EN_ROUTE or booking.driver_arrived_at is None:
                raise InvalidTransition(
                    booking.status, BookingStatus.NO_SHOW, "driver has not arrived"
                )
            self._check_driver(booking, driver_id)
            policy = await uow.policies.current()
            waited = now - booking.driver_arrived_at
            quote = compute_no_show_fee(booking, waited, policy)
            if not quote.eligible:
                raise NoShowNotEligible(policy.no_show_wait_time - waited.total_seconds())

            closed = request_transition(
                booking,
                BookingStatus.NO_SHOW,
                at=now,
                actor=Actor.DRIVER,
                cancellation=self._cancellation(
                    CancellationReason.CUSTOMER_NO_SHOW, now, Actor.DRIVER, quote, driver_id
                ),
            ).unwrap()
            saved = await uow.bookings.save(closed)
            await self._release_driver(uow, driver_id, now)
            await uow.drivers.credit_earnings(driver_id, quote.driver_payout)
            await uow.commit()
        logger.info("Booking %s closed as no-show (fee %.2f)", booking_id, quote.fee)
        self.notifier.dispatch(
            NotificationKind.NO_SHOW,
            saved,
            saved.passenger_id,
            actor=Actor.DRIVER,
            data={"fee": quote.fee, "reason": quote.reason.value},
        )
        return saved

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel(
        self,
        booking_id: int,
        *,
        actor: Actor = Actor.PASSENGER,
        reason: CancellationReason = CancellationReason.PASSENGER_REQUEST,
        note: Optional[str] = None,
    ) -> Booking:
        """Cancel with the fee the policy dictates.

        Cancelling an already cancelled booking returns it unchanged.  An
        outstanding offer is revoked and the dispatch process interrupted.
        """
        now = self.clock.now()
        events: list[NotificationEvent] = []
        async with self._booking(booking_id) as (uow, booking):
            if booking.status == BookingStatus.CANCELLED:
                return booking
            policy = await uow.policies.current()

            if actor == Actor.PASSENGER:
                cancelled_today = await uow.bookings.count_cancellations_since(
                    booking.passenger_id, start_of_day(now)
                )
                error = check_cancellation_limit(cancelled_today, policy)
                if error is not None:
                    raise error
                quote = compute_cancellation_fee(booking, now, policy)
            elif actor == Actor.DRIVER:
                quote = FeeQuote(0.0, FeeReason.DRIVER_CANCELLED)
            else:
                quote = FeeQuote(0.0, FeeReason.ADMIN_OVERRIDE)

            driver_id = booking.assigned_driver_id
            result = request_transition(
                booking,
                BookingStatus.CANCELLED,
                at=now,
                actor=actor,
                note=note,
                cancellation=self._cancellation(reason, now, actor, quote, driver_id),
            )
            if not result.ok:
                raise result.error
            saved = await uow.bookings.save(result.booking)

            driver = None
            if driver_id is not None:
                driver = await self._release_driver(uow, driver_id, now)
                await uow.drivers.credit_earnings(driver_id, quote.driver_payout)
            events = await self.scheduler.revoke_open_offer(uow, saved, now)
            await uow.commit()
            self.scheduler.interrupt(booking_id)

        logger.info(
            "Booking %s cancelled by %s (fee %.2f, %s)",
            booking_id,
            actor.value,
            quote.fee,
            quote.reason.value,
        )
        events.append(
            NotificationEvent(
                NotificationKind.BOOKING_CANCELLED,
                saved.passenger_id,
                saved,
                actor=actor,
                data={"fee": quote.fee, "reason": quote.reason.value},
            )
        )
        if driver is not None and actor != Actor.DRIVER:
            events.append(
                NotificationEvent(
                    NotificationKind.JOB_CANCELLED,
                    driver.user_id,
                    saved,
                    actor=actor,
                    data={"payout": quote.driver_payout},
                )
            )
        self.notifier.dispatch_all(events)
        return saved

    # ── Refund / dispute ──────────────────────────────────────────────

    async def refund(self, booking_id: int, actor: Actor = Actor.ADMIN) -> Booking:
        now = self.clock.now()
        async with self._booking(booking_id) as (uow, booking):
            refunded = request_transition(
                booking,
                BookingStatus.REFUNDED,
                at=now,
                actor=actor,
                payment_status=PaymentStatus.REFUNDED,
            ).unwrap()
            saved = await uow.bookings.save(refunded)
            await uow.commit()
        self._notify_status(saved, actor)
        return saved

    async def open_dispute(
        self, booking_id: int, passenger_id: int, reason: str, description: str
    ) -> Dispute:
        """Open a manual-review dispute; never changes the booking status."""
        try:
            reason = DisputeReason(reason)
        except ValueError:
            raise DisputeNotAllowed(f"Unknown dispute reason {reason!r}") from None
        text = clean_description(description)
        if len(text) < DISPUTE_DESCRIPTION_MIN:
            raise DisputeNotAllowed(
                f"Description must be at least {DISPUTE_DESCRIPTION_MIN} characters"
            )

        now = self.clock.now()
        async with self._booking(booking_id) as (uow, booking):
            if booking.passenger_id != passenger_id:
                raise DisputeNotAllowed("Only the booking's passenger can open a dispute")
            if booking.has_dispute or await uow.disputes.get_for_booking(booking_id):
                raise DisputeNotAllowed("A dispute already exists for this booking")
            if booking.status not in DISPUTABLE_STATUSES:
                raise DisputeNotAllowed(
                    f"Bookings in status {booking.status.value} cannot be disputed"
                )
            policy = await uow.policies.current()
            if not policy.enable_dispute:
                raise DisputeNotAllowed("Disputes are disabled")
            if not dispute_window_open(booking, now, policy):
                raise DisputeNotAllowed(
                    f"Disputes must be opened within {policy.dispute_window} hours"
                )

            fee = booking.cancellation.fee_charged if booking.cancellation else 0.0
            dispute = await uow.disputes.add(
                Dispute(
                    booking_id=booking_id,
                    passenger_id=passenger_id,
                    driver_id=booking.cancellation.driver_id if booking.cancellation else None,
                    reason=reason.value,
                    description=text,
                    fee_under_dispute=fee,
                    created_at=now,
                )
            )
            booking.has_dispute = True
            saved = await uow.bookings.save(booking)
            await uow.commit()
        logger.info("Dispute %s opened for booking %s (%s)", dispute.id, booking_id, reason.value)
        self.notifier.dispatch(
            NotificationKind.DISPUTE_OPENED,
            saved,
            passenger_id,
            actor=Actor.PASSENGER,
            data={"dispute_id": dispute.id, "reason": reason.value},
        )
        return dispute

    # ── Admin override ────────────────────────────────────────────────

    async def override_status(
        self,
        booking_id: int,
        target: BookingStatus,
        *,
        note: Optional[str] = None,
        driver_id: Optional[int] = None,
    ) -> Booking:
        """Forced status change from the operations console.

        Still validated; interrupts any dispatch in flight for the booking.
        """
        target = BookingStatus(target)
        if target == BookingStatus.CANCELLED:
            return await self.cancel(
                booking_id,
                actor=Actor.ADMIN,
                reason=CancellationReason.ADMIN_OVERRIDE,
                note=note,
            )
        if target == BookingStatus.REFUNDED:
            return await self.refund(booking_id, Actor.ADMIN)

        now = self.clock.now()
        events: list[NotificationEvent] = []
        async with self._booking(booking_id) as (uow, booking):
            changes: dict = {}
            driver: Optional[Driver] = None
            if target == BookingStatus.DRIVER_ASSIGNED and driver_id is not None:
                driver = await uow.drivers.get(driver_id)
                if driver is None:
                    raise DriverNotFound(driver_id)
                changes = {"assigned_driver_id": driver_id, "assigned_at": now}
            if target == BookingStatus.COMPLETED:
                changes["completed_at"] = now

            previous_driver = booking.assigned_driver_id
            result = request_transition(
                booking, target, at=now, actor=Actor.ADMIN, note=note, **changes
            )
            if not result.ok:
                raise result.error
            if driver is not None and result.changed:
                policy = await uow.policies.current()
                claimed = await uow.drivers.set_status(
                    driver.id, DriverStatus.BUSY, only_if=assignable_statuses(policy)
                )
                if not claimed:
                    raise DriverUnavailable(f"Driver {driver_id} cannot take another job")
            saved = await uow.bookings.save(result.booking)

            if previous_driver is not None and target not in DRIVER_HELD_STATUSES:
                await self._release_driver(
                    uow,
                    previous_driver,
                    now,
                    trip_completed=target == BookingStatus.COMPLETED,
                )
            if result.changed and booking.status == BookingStatus.CONFIRMED:
                events = await self.scheduler.revoke_open_offer(uow, saved, now)
            await uow.commit()
            if result.changed:
                self.scheduler.interrupt(booking_id)

        if result.changed:
            logger.info(
                "Admin moved booking %s from %s to %s",
                booking_id,
                booking.status.value,
                target.value,
            )
            self.notifier.dispatch_all(events)
            self._notify_status(saved, Actor.ADMIN)
        return saved

    # ── Drivers ───────────────────────────────────────────────────────

    async def set_driver_status(self, driver_id: int, status: DriverStatus) -> Driver:
        """Drivers go online / offline themselves; ``busy`` is engine-owned."""
        status = DriverStatus(status)
        if status == DriverStatus.BUSY:
            raise DriverUnavailable("Drivers cannot set themselves busy")
        async with self.uow_factory() as uow:
            driver = await uow.drivers.get(driver_id)
            if driver is None:
                raise DriverNotFound(driver_id)
            changed = await uow.drivers.set_status(
                driver_id, status, self.clock.now(), unless=DriverStatus.BUSY
            )
            if not changed:
                raise DriverUnavailable(f"Driver {driver_id} is on an active job")
            await uow.commit()
            driver = await uow.drivers.get(driver_id)
        return driver

    # ── Helpers ───────────────────────────────────────────────────────

    async def _advance(
        self,
        booking_id: int,
        target: BookingStatus,
        actor: Actor,
        *,
        driver_id: Optional[int] = None,
    ) -> Booking:
        now = self.clock.now()
        async with self._booking(booking_id) as (uow, booking):
            result = request_transition(booking, target, at=now, actor=actor)
            if not result.ok:
                raise result.error
            if driver_id is not None:
                self._check_driver(booking, driver_id)
            if not result.changed:
                return booking
            saved = await uow.bookings.save(result.booking)
            await uow.commit()
        self._notify_status(saved, actor)
        return saved

    @staticmethod
    def _check_driver(booking: Booking, driver_id: int) -> None:
        if booking.assigned_driver_id != driver_id:
            raise DriverUnavailable(
                f"Driver {driver_id} is not assigned to booking {booking.id}"
            )

    @staticmethod
    def _cancellation(
        reason: CancellationReason,
        at: datetime,
        actor: Actor,
        quote: FeeQuote,
        driver_id: Optional[int],
    ) -> Cancellation:
        return Cancellation(
            reason=CancellationReason(reason).value,
            at=at,
            cancelled_by=actor,
            fee_charged=quote.fee,
            fee_waived=quote.waived,
            waived_reason_code=quote.reason.value if quote.fee == 0 else None,
            driver_payout=quote.driver_payout,
            driver_id=driver_id,
        )

    @staticmethod
    async def _release_driver(
        uow: UnitOfWork, driver_id: int, now: datetime, *, trip_completed: bool = False
    ) -> Optional[Driver]:
        driver = await uow.drivers.get(driver_id)
        if driver is None:
            return None
        # Stays busy while another booking still holds the driver
        held = await uow.bookings.count_held_by_driver(driver_id)
        status = DriverStatus.BUSY if held else DriverStatus.AVAILABLE
        await uow.drivers.set_status(driver_id, status, now, trip_completed=trip_completed)
        return driver

    def _notify_status(self, booking: Booking, actor: Actor) -> None:
        self.notifier.dispatch(
            NotificationKind.STATUS_CHANGED, booking, booking.passenger_id, actor=actor
        )
