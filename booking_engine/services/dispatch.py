"""
Dispatch Scheduler
==================

Turns a ``confirmed`` booking into a ``driver_assigned`` one by offering it
to drivers one at a time.

Per-booking process
-------------------
``begin_dispatch`` starts one asyncio task per booking.  Each step:

1. Re-read booking + policy under the booking lock.  Give up with
   ``NoDriverFound`` when ``rematch_count`` reached ``max_rematch_attempts``
   or ``total_search_timeout`` elapsed since ``search_started_at``.
2. Pick the longest-idle available driver (busy ones too when
   ``allow_multiple_jobs`` is on) that has not rejected / let expire an
   offer for this booking in the current search and holds no other
   outstanding offer.
3. Record a ``DispatchAttempt`` with ``deadline = now + driver_response_timeout``,
   capped at ``search_started_at + total_search_timeout``, notify the
   driver, then suspend on the clock until the deadline, a response or an
   interrupt.
4. Accept -> ``driver_assigned`` + driver ``busy`` in one unit of work.  The
   driver update is conditional on the driver still being assignable, so
   two bookings can never both claim the same driver.
5. Reject / deadline -> ``rematch_count += 1``, wait
   ``delay_between_matches`` (no lock held), back to 1.

Concurrency safety
------------------
* Every settlement of an offer (accept, reject, expiry, revoke) happens
  under the per-booking lock and records the outcome on the stored attempt
  only once, so exactly one of them wins; later ones are discarded.
* The deadline is authoritative: a response at or after it is discarded
  even if the timer task has not run yet.
* Responses are matched against the stored attempt, so any instance can
  settle an offer.  The owning process reads the stored outcome when its
  deadline timer fires.
* The process suspends only on the clock and never holds the lock while
  notifications are delivered.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from booking_engine.domain.clock import Clock
from booking_engine.domain.entities import Booking, Cancellation, DispatchAttempt, Driver
from booking_engine.domain.enums import (
    Actor,
    AttemptOutcome,
    BookingStatus,
    CancellationReason,
    DriverStatus,
    NotificationKind,
)
from booking_engine.domain.errors import (
    BookingEngineError,
    BookingNotFound,
    InvalidTransition,
    NoDriverFound,
    StaleWrite,
)
from booking_engine.domain.policy import Policy
from booking_engine.domain.transitions import request_transition
from booking_engine.infrastructure.locks import BookingLocks
from booking_engine.infrastructure.unit_of_work import UnitOfWork, UnitOfWorkFactory
from booking_engine.services.notifications import NotificationDispatcher, NotificationEvent

logger = logging.getLogger(__name__)

_MAX_STALE_RETRIES = 3


class DispatchResult(str, enum.Enum):
    ASSIGNED = "assigned"
    NO_DRIVER_FOUND = "no_driver_found"
    ABORTED = "aborted"


class ResponseResult(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class DispatchOutcome:
    booking_id: int
    result: DispatchResult
    driver_id: Optional[int] = None
    error: Optional[BookingEngineError] = None


@dataclass
class _Offer:
    attempt: DispatchAttempt
    policy: Policy
    decided: asyncio.Future


@dataclass
class _Process:
    booking_id: int
    stop: asyncio.Event
    task: Optional[asyncio.Task] = None
    offer: Optional[_Offer] = None


def _idle_key(driver: Driver):
    # Free drivers before busy ones, never-stamped first, then oldest idle_since,
    # then lowest id
    return (
        driver.status != DriverStatus.AVAILABLE,
        driver.idle_since is not None,
        driver.idle_since,
        driver.id,
    )


def assignable_statuses(policy: Policy) -> tuple[DriverStatus, ...]:
    """Driver statuses that may take another job under *policy*."""
    if policy.allow_multiple_jobs:
        return (DriverStatus.AVAILABLE, DriverStatus.BUSY)
    return (DriverStatus.AVAILABLE,)


class DispatchScheduler:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        locks: BookingLocks,
        notifier: NotificationDispatcher,
        clock: Clock,
    ):
        self.uow_factory = uow_factory
        self.locks = locks
        self.notifier = notifier
        self.clock = clock
        self._processes: dict[int, _Process] = {}
        self._offers: dict[int, _Offer] = {}

    # ── Public API ────────────────────────────────────────────────────

    async def begin_dispatch(self, booking_id: int) -> asyncio.Task:
        """Start (or join) the dispatch process of a confirmed booking.

        Raises ``PolicyOutOfRange`` if the current policy is invalid and
        ``InvalidTransition`` if the booking is not ``confirmed``.
        """
        running = self._processes.get(booking_id)
        if running is not None and not running.task.done():
            return running.task

        async with self.locks.hold(booking_id):
            async with self.uow_factory() as uow:
                await uow.policies.current()
                booking = await uow.bookings.get(booking_id)
                if booking is None:
                    raise BookingNotFound(booking_id)
                if booking.status != BookingStatus.CONFIRMED:
                    raise InvalidTransition(
                        booking.status,
                        BookingStatus.DRIVER_ASSIGNED,
                        "dispatch requires a confirmed booking",
                    )
                if booking.search_started_at is None:
                    booking.search_started_at = self.clock.now()
                    await uow.bookings.save(booking)
                    await uow.commit()

        running = self._processes.get(booking_id)
        if running is not None and not running.task.done():
            return running.task

        proc = _Process(booking_id=booking_id, stop=asyncio.Event())
        proc.task = asyncio.get_running_loop().create_task(self._run(proc))
        self._processes[booking_id] = proc
        proc.task.add_done_callback(lambda _t, p=proc: self._forget(p))
        logger.info("Dispatch started for booking %s", booking_id)
        return proc.task

    async def respond(
        self, attempt_id: int, driver_id: int, accepted: bool
    ) -> ResponseResult:
        """Apply a driver's answer to a still-outstanding offer.

        The offer may belong to a process on another instance: the stored
        attempt is what gets settled, the owning process picks the outcome
        up when its deadline timer fires.
        """
        offer = self._offers.get(attempt_id)
        if offer is not None:
            booking_id = offer.attempt.booking_id
        else:
            async with self.uow_factory() as uow:
                attempt = await uow.attempts.get(attempt_id)
            if attempt is None:
                return self._discard(attempt_id, driver_id, "unknown attempt")
            booking_id = attempt.booking_id

        async with self.locks.hold(booking_id):
            now = self.clock.now()
            async with self.uow_factory() as uow:
                attempt = await uow.attempts.get(attempt_id)
                if attempt is None or not attempt.is_outstanding:
                    return self._discard(attempt_id, driver_id, "already settled")
                if attempt.driver_id != driver_id:
                    return self._discard(attempt_id, driver_id, "offered to another driver")
                if now >= attempt.deadline:
                    return self._discard(attempt_id, driver_id, "deadline passed")

                policy = offer.policy if offer is not None else await uow.policies.current()
                booking = await uow.bookings.get(booking_id)
                if accepted:
                    outcome, events = await self._accept(uow, attempt, policy, booking, now)
                else:
                    outcome = AttemptOutcome.REJECTED
                    events = await self._close_attempt(
                        uow, attempt, booking, policy, outcome, now
                    )
                await uow.commit()
            if offer is not None:
                self._settle(offer, outcome)

        self.notifier.dispatch_all(events)
        if outcome == AttemptOutcome.ACCEPTED:
            return ResponseResult.ACCEPTED
        if outcome == AttemptOutcome.REJECTED:
            return ResponseResult.REJECTED
        return ResponseResult.DISCARDED

    async def revoke_open_offer(
        self, uow: UnitOfWork, booking: Booking, now: datetime
    ) -> list[NotificationEvent]:
        """Withdraw the outstanding offer of *booking*.

        The caller holds the booking lock and owns *uow*; it must call
        ``interrupt`` once its transaction committed.
        """
        attempt = await uow.attempts.open_for_booking(booking.id)
        if attempt is None:
            return []
        await uow.attempts.record_outcome(attempt.id, AttemptOutcome.REVOKED, now)
        driver = await uow.drivers.get(attempt.driver_id)
        if driver is None:
            return []
        return [
            NotificationEvent(
                NotificationKind.OFFER_REVOKED,
                driver.user_id,
                booking,
                data={"attempt_id": attempt.id, "reason": "booking_cancelled"},
            )
        ]

    def interrupt(self, booking_id: int) -> bool:
        """Stop the in-flight process of *booking_id* (cancel its timers)."""
        proc = self._processes.get(booking_id)
        if proc is None:
            return False
        if proc.offer is not None:
            self._settle(proc.offer, AttemptOutcome.REVOKED)
        proc.stop.set()
        logger.info("Dispatch for booking %s interrupted", booking_id)
        return True

    def is_dispatching(self, booking_id: int) -> bool:
        proc = self._processes.get(booking_id)
        return proc is not None and not proc.task.done()

    async def describe_offer(self, attempt_id: int) -> Optional[tuple[DispatchAttempt, float]]:
        """Attempt plus seconds left on its countdown (server-issued deadline)."""
        async with self.uow_factory() as uow:
            attempt = await uow.attempts.get(attempt_id)
        if attempt is None:
            return None
        return attempt, attempt.seconds_remaining(self.clock.now())

    async def expire_overdue_offers(self, grace_seconds: float = 0) -> int:
        """Expire outstanding offers whose deadline passed with no live process.

        Covers offers left behind by a crashed or restarted process; the
        booking's search is resumed if it is still ``confirmed``.  Only
        offers more than *grace_seconds* past their deadline are touched, so
        a live process on another instance expires its own offers first.
        """
        now = self.clock.now()
        async with self.uow_factory() as uow:
            overdue = await uow.attempts.list_overdue(now - timedelta(seconds=grace_seconds))

        expired = 0
        for attempt in overdue:
            if attempt.id in self._offers:
                continue
            events: list[NotificationEvent] = []
            resume = False
            async with self.locks.hold(attempt.booking_id):
                async with self.uow_factory() as uow:
                    fresh = await uow.attempts.get(attempt.id)
                    if fresh is None or not fresh.is_outstanding:
                        continue
                    booking = await uow.bookings.get(attempt.booking_id)
                    policy = await uow.policies.current()
                    events = await self._close_attempt(
                        uow, fresh, booking, policy, AttemptOutcome.EXPIRED, now
                    )
                    await uow.commit()
                    resume = booking is not None and booking.status == BookingStatus.CONFIRMED
            expired += 1
            self.notifier.dispatch_all(events)
            if resume and not self.is_dispatching(attempt.booking_id):
                try:
                    await self.begin_dispatch(attempt.booking_id)
                except BookingEngineError:
                    logger.exception(
                        "Could not resume dispatch for booking %s", attempt.booking_id
                    )
        if expired:
            logger.info("Offer sweeper expired %d stale offer(s)", expired)
        return expired

    async def shutdown(self) -> None:
        procs = list(self._processes.values())
        for proc in procs:
            proc.stop.set()
        await asyncio.gather(*(p.task for p in procs), return_exceptions=True)

    # ── Process body ──────────────────────────────────────────────────

    async def _run(self, proc: _Process) -> DispatchOutcome:
        stale_retries = 0
        try:
            while True:
                try:
                    step = await self._offer_next(proc)
                except StaleWrite:
                    stale_retries += 1
                    if stale_retries > _MAX_STALE_RETRIES:
                        raise
                    continue
                if isinstance(step, DispatchOutcome):
                    return step

                offer = step
                remaining = (offer.attempt.deadline - self.clock.now()).total_seconds()
                woke = await self._wait(proc, remaining, offer.decided)
                if woke == "elapsed":
                    await self._expire(offer)
                elif not offer.decided.done():
                    return DispatchOutcome(proc.booking_id, DispatchResult.ABORTED)

                outcome = offer.decided.result()
                proc.offer = None
                if outcome == AttemptOutcome.ACCEPTED:
                    return DispatchOutcome(
                        proc.booking_id,
                        DispatchResult.ASSIGNED,
                        driver_id=offer.attempt.driver_id,
                    )
                if outcome == AttemptOutcome.REVOKED:
                    return DispatchOutcome(proc.booking_id, DispatchResult.ABORTED)

                if await self._wait(proc, offer.policy.delay_between_matches) == "stopped":
                    return DispatchOutcome(proc.booking_id, DispatchResult.ABORTED)
        except BookingEngineError as exc:
            logger.exception("Dispatch for booking %s stopped", proc.booking_id)
            return DispatchOutcome(proc.booking_id, DispatchResult.ABORTED, error=exc)
        finally:
            if proc.offer is not None:
                self._offers.pop(proc.offer.attempt.id, None)
                proc.offer = None

    async def _offer_next(self, proc: _Process) -> DispatchOutcome | _Offer:
        booking_id = proc.booking_id
        events: list[NotificationEvent] = []
        result: DispatchOutcome | _Offer

        async with self.locks.hold(booking_id):
            now = self.clock.now()
            async with self.uow_factory() as uow:
                booking = await uow.bookings.get(booking_id)
                if booking is None or booking.status != BookingStatus.CONFIRMED:
                    return DispatchOutcome(booking_id, DispatchResult.ABORTED)
                policy = await uow.policies.current()

                failure = self._search_exhausted(booking, policy, now)
                driver = None
                if failure is None:
                    driver = await self._select_candidate(uow, booking, policy)
                    if driver is None:
                        failure = "no_candidates"

                if failure is not None:
                    result, events = await self._give_up(uow, booking, failure, now)
                    await uow.commit()
                else:
                    attempt = await uow.attempts.add(
                        DispatchAttempt(
                            booking_id=booking_id,
                            driver_id=driver.id,
                            offered_at=now,
                            deadline=self._offer_deadline(booking, policy, now),
                        )
                    )
                    await uow.commit()
                    result = _Offer(
                        attempt, policy, asyncio.get_running_loop().create_future()
                    )
                    self._offers[attempt.id] = result
                    proc.offer = result
                    events = [
                        NotificationEvent(
                            NotificationKind.OFFER,
                            driver.user_id,
                            booking,
                            data={
                                "attempt_id": attempt.id,
                                "deadline": attempt.deadline.isoformat(),
                                "seconds": int((attempt.deadline - now).total_seconds()),
                            },
                        )
                    ]
                    logger.info(
                        "Booking %s offered to driver %s (attempt %s, rematch %d)",
                        booking_id,
                        driver.id,
                        attempt.id,
                        booking.rematch_count,
                    )

        self.notifier.dispatch_all(events)
        return result

    async def _wait(
        self,
        proc: _Process,
        seconds: float,
        decided: Optional[asyncio.Future] = None,
    ) -> str:
        """Suspend on the clock.  Returns "decided", "stopped" or "elapsed"."""
        timer = asyncio.ensure_future(self.clock.sleep(max(seconds, 0)))
        stopped = asyncio.ensure_future(proc.stop.wait())
        waiting = {timer, stopped}
        if decided is not None:
            waiting.add(decided)
        try:
            await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
        finally:
            timer.cancel()
            stopped.cancel()
        if decided is not None and decided.done():
            return "decided"
        if proc.stop.is_set():
            return "stopped"
        return "elapsed"

    async def _expire(self, offer: _Offer) -> None:
        """Deadline reached: an implicit reject, unless something settled first."""
        events: list[NotificationEvent] = []
        async with self.locks.hold(offer.attempt.booking_id):
            if offer.decided.done():
                return
            now = self.clock.now()
            async with self.uow_factory() as uow:
                stored = await uow.attempts.get(offer.attempt.id)
                if stored is not None and not stored.is_outstanding:
                    # Answered through another instance
                    outcome = stored.outcome
                else:
                    outcome = AttemptOutcome.EXPIRED
                    booking = await uow.bookings.get(offer.attempt.booking_id)
                    events = await self._close_attempt(
                        uow, offer.attempt, booking, offer.policy, outcome, now
                    )
                    await uow.commit()
            self._settle(offer, outcome)
        if outcome == AttemptOutcome.EXPIRED:
            logger.info(
                "Offer %s to driver %s expired", offer.attempt.id, offer.attempt.driver_id
            )
        self.notifier.dispatch_all(events)

    # ── Decisions (caller holds the booking lock) ─────────────────────

    @staticmethod
    def _search_exhausted(booking: Booking, policy: Policy, now: datetime) -> Optional[str]:
        if booking.rematch_count >= policy.max_rematch_attempts:
            return "retries_exhausted"
        started = booking.search_started_at or now
        if (now - started).total_seconds() >= policy.total_search_timeout:
            return "search_timeout"
        return None

    @staticmethod
    def _offer_deadline(booking: Booking, policy: Policy, now: datetime) -> datetime:
        deadline = now + timedelta(seconds=policy.driver_response_timeout)
        if booking.search_started_at is None:
            return deadline
        search_ends = booking.search_started_at + timedelta(seconds=policy.total_search_timeout)
        return min(deadline, search_ends)

    @staticmethod
    async def _select_candidate(
        uow: UnitOfWork, booking: Booking, policy: Policy
    ) -> Optional[Driver]:
        tried = await uow.attempts.list_for_booking(
            booking.id, since=booking.search_started_at
        )
        excluded = {
            a.driver_id
            for a in tried
            if a.outcome in (AttemptOutcome.REJECTED, AttemptOutcome.EXPIRED)
        }
        excluded |= await uow.attempts.drivers_with_open_offers()
        drivers = await uow.drivers.list_available(include_busy=policy.allow_multiple_jobs)
        candidates = [d for d in drivers if d.id not in excluded]
        if not candidates:
            return None
        return min(candidates, key=_idle_key)

    async def _give_up(
        self, uow: UnitOfWork, booking: Booking, reason: str, now: datetime
    ) -> tuple[DispatchOutcome, list[NotificationEvent]]:
        cancellation = Cancellation(
            reason=CancellationReason.NO_DRIVER_AVAILABLE.value,
            at=now,
            cancelled_by=Actor.SYSTEM,
        )
        cancelled = request_transition(
            booking,
            BookingStatus.CANCELLED,
            at=now,
            actor=Actor.SYSTEM,
            note=f"dispatch ended: {reason}",
            cancellation=cancellation,
        ).unwrap()
        await uow.bookings.save(cancelled)
        logger.info(
            "No driver found for booking %s (%s, rematch %d)",
            booking.id,
            reason,
            cancelled.rematch_count,
        )
        outcome = DispatchOutcome(
            booking.id,
            DispatchResult.NO_DRIVER_FOUND,
            error=NoDriverFound(booking.id, reason),
        )
        events = [
            NotificationEvent(
                NotificationKind.NO_DRIVER_FOUND,
                booking.passenger_id,
                cancelled,
                data={"reason": reason},
            )
        ]
        return outcome, events

    async def _accept(
        self,
        uow: UnitOfWork,
        attempt: DispatchAttempt,
        policy: Policy,
        booking: Optional[Booking],
        now: datetime,
    ) -> tuple[AttemptOutcome, list[NotificationEvent]]:
        if booking is None:
            await uow.attempts.record_outcome(attempt.id, AttemptOutcome.REVOKED, now)
            return AttemptOutcome.REVOKED, []

        driver = await uow.drivers.get(attempt.driver_id)
        result = request_transition(
            booking,
            BookingStatus.DRIVER_ASSIGNED,
            at=now,
            actor=Actor.DRIVER,
            assigned_driver_id=attempt.driver_id,
            assigned_at=now,
        )
        if not result.ok:
            logger.info(
                "Accept for booking %s already handled: %s", booking.id, result.error
            )
            await uow.attempts.record_outcome(attempt.id, AttemptOutcome.REVOKED, now)
            return AttemptOutcome.REVOKED, []

        claimed = driver is not None and await uow.drivers.set_status(
            driver.id, DriverStatus.BUSY, only_if=assignable_statuses(policy)
        )
        if not claimed:
            # Driver went busy / offline since the offer: counts as a reject
            events = await self._close_attempt(
                uow, attempt, booking, policy, AttemptOutcome.REJECTED, now
            )
            return AttemptOutcome.REJECTED, events

        assigned = await uow.bookings.save(result.booking)
        await uow.attempts.record_outcome(attempt.id, AttemptOutcome.ACCEPTED, now)
        logger.info("Driver %s accepted booking %s", driver.id, booking.id)
        return AttemptOutcome.ACCEPTED, [
            NotificationEvent(
                NotificationKind.DRIVER_ASSIGNED,
                booking.passenger_id,
                assigned,
                actor=Actor.DRIVER,
                data={"driver_id": driver.id, "driver_name": driver.name},
            ),
            NotificationEvent(
                NotificationKind.JOB_CONFIRMED,
                driver.user_id,
                assigned,
                data={"attempt_id": attempt.id},
            ),
        ]

    async def _close_attempt(
        self,
        uow: UnitOfWork,
        attempt: DispatchAttempt,
        booking: Optional[Booking],
        policy: Policy,
        outcome: AttemptOutcome,
        now: datetime,
    ) -> list[NotificationEvent]:
        """Record a reject / expiry and count it as a rematch."""
        if not await uow.attempts.record_outcome(attempt.id, outcome, now):
            return []
        if booking is None or booking.status != BookingStatus.CONFIRMED:
            return []
        # Capped by the policy, but never below what is already stored
        capped = min(booking.rematch_count + 1, policy.max_rematch_attempts)
        bumped = replace(booking, rematch_count=max(booking.rematch_count, capped))
        await uow.bookings.save(bumped)
        if outcome != AttemptOutcome.EXPIRED:
            return []
        driver = await uow.drivers.get(attempt.driver_id)
        if driver is None:
            return []
        return [
            NotificationEvent(
                NotificationKind.OFFER_REVOKED,
                driver.user_id,
                bumped,
                data={"attempt_id": attempt.id, "reason": "expired"},
            )
        ]

    def _settle(self, offer: _Offer, outcome: AttemptOutcome) -> None:
        if not offer.decided.done():
            offer.decided.set_result(outcome)
        self._offers.pop(offer.attempt.id, None)

    def _forget(self, proc: _Process) -> None:
        if self._processes.get(proc.booking_id) is proc:
            del self._processes[proc.booking_id]

    @staticmethod
    def _discard(attempt_id: int, driver_id: int, why: str) -> ResponseResult:
        logger.info(
            "Discarding response to attempt %s from driver %s: %s", attempt_id, driver_id, why
        )
        return ResponseResult.DISCARDED
