"""
Dispatch scheduler tests.

All timing runs on ``FakeClock``: ``clock.advance`` fires due timers in
order, ``clock.jump`` moves time without firing anything (used to land a
response exactly at or after a deadline before the timer task runs).
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from booking_engine.domain.entities import DispatchAttempt
from booking_engine.domain.enums import (
    AttemptOutcome,
    BookingStatus,
    CancellationReason,
    DriverStatus,
)
from booking_engine.domain.errors import (
    BookingNotFound,
    DriverUnavailable,
    InvalidTransition,
    NoDriverFound,
    PolicyOutOfRange,
)
from booking_engine.engine import build_engine
from booking_engine.infrastructure.locks import LocalBookingLocks
from booking_engine.services.dispatch import DispatchResult, ResponseResult
from tests.conftest import T0
from tests.fakes import InMemoryUnitOfWork, _Drivers, settle


async def _start(engine, booking):
    task = await engine.scheduler.begin_dispatch(booking.id)
    await settle()
    return task


class TestOfferAndAccept:
    @pytest.mark.asyncio
    async def test_accept_assigns_driver(self, engine, factory, store, delivery):
        driver = await factory.driver("Ann", idle_minutes=10)
        booking = await factory.booking()

        task = await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        assert attempt.driver_id == driver.id
        assert attempt.offered_at == T0
        assert attempt.deadline == T0 + timedelta(seconds=15)
        assert store.booking(booking.id).search_started_at == T0

        result = await engine.scheduler.respond(attempt.id, driver.id, True)
        assert result == ResponseResult.ACCEPTED

        outcome = await task
        assert outcome.result == DispatchResult.ASSIGNED
        assert outcome.driver_id == driver.id

        stored = store.booking(booking.id)
        assert stored.status == BookingStatus.DRIVER_ASSIGNED
        assert stored.assigned_driver_id == driver.id
        assert stored.assigned_at == T0
        assert store.driver(driver.id).status == DriverStatus.BUSY
        assert store.attempts[attempt.id].outcome == AttemptOutcome.ACCEPTED

    @pytest.mark.asyncio
    async def test_notifications_for_offer_and_assignment(
        self, engine, factory, store, delivery
    ):
        driver = await factory.driver("Ann")
        booking = await factory.booking(passenger_id=42)

        await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        await engine.scheduler.respond(attempt.id, driver.id, True)
        await engine.notifier.drain()

        [(user_id, offer)] = delivery.of_type("offer")
        assert user_id == driver.user_id
        assert offer["data"]["attempt_id"] == attempt.id
        assert offer["data"]["seconds"] == 15
        assert offer["data"]["deadline"] == attempt.deadline.isoformat()

        [(passenger, assigned)] = delivery.of_type("driver_assigned")
        assert passenger == 42
        assert assigned["data"]["driver_id"] == driver.id
        assert assigned["data"]["driver_name"] == "Ann"

        [(driver_user, _)] = delivery.of_type("job_confirmed")
        assert driver_user == driver.user_id

    @pytest.mark.asyncio
    async def test_begin_dispatch_twice_returns_same_process(self, engine, factory):
        await factory.driver()
        booking = await factory.booking()

        first = await engine.scheduler.begin_dispatch(booking.id)
        second = await engine.scheduler.begin_dispatch(booking.id)
        assert first is second
        assert engine.scheduler.is_dispatching(booking.id)

    @pytest.mark.asyncio
    async def test_allow_multiple_jobs_accepts_busy_driver(self, engine, factory, store):
        factory.policy(allow_multiple_jobs=True)
        driver = await factory.driver()
        booking = await factory.booking()

        task = await _start(engine, booking)
        store.drivers[driver.id].status = DriverStatus.BUSY
        attempt = store.open_attempt(booking.id)

        assert await engine.scheduler.respond(attempt.id, driver.id, True) == ResponseResult.ACCEPTED
        assert (await task).result == DispatchResult.ASSIGNED


class TestCandidateSelection:
    @pytest.mark.asyncio
    async def test_longest_idle_driver_first(self, engine, factory, store):
        await factory.driver("recent", idle_minutes=2)
        longest = await factory.driver("longest", idle_minutes=40)
        await factory.driver("middle", idle_minutes=15)
        booking = await factory.booking()

        await _start(engine, booking)
        assert store.open_attempt(booking.id).driver_id == longest.id

    @pytest.mark.asyncio
    async def test_never_idle_stamped_driver_goes_first(self, engine, factory, store):
        await factory.driver("long idle", idle_minutes=60)
        fresh = await factory.driver("never stamped", idle_minutes=None)
        booking = await factory.booking()

        await _start(engine, booking)
        assert store.open_attempt(booking.id).driver_id == fresh.id

    @pytest.mark.asyncio
    async def test_equal_idle_time_breaks_on_lowest_id(self, engine, factory, store):
        first = await factory.driver("a", idle_minutes=10)
        await factory.driver("b", idle_minutes=10)
        booking = await factory.booking()

        await _start(engine, booking)
        assert store.open_attempt(booking.id).driver_id == first.id

    @pytest.mark.asyncio
    async def test_offline_and_busy_drivers_are_skipped(self, engine, factory, store):
        await factory.driver("off", idle_minutes=60, status=DriverStatus.OFFLINE)
        await factory.driver("busy", idle_minutes=50, status=DriverStatus.BUSY)
        free = await factory.driver("free", idle_minutes=1)
        booking = await factory.booking()

        await _start(engine, booking)
        assert store.open_attempt(booking.id).driver_id == free.id

    @pytest.mark.asyncio
    async def test_driver_with_open_offer_not_offered_twice(self, engine, factory, store):
        d1 = await factory.driver("d1", idle_minutes=30)
        d2 = await factory.driver("d2", idle_minutes=10)
        b1 = await factory.booking(passenger_id=1)
        b2 = await factory.booking(passenger_id=2)

        await _start(engine, b1)
        await _start(engine, b2)
        assert store.open_attempt(b1.id).driver_id == d1.id
        assert store.open_attempt(b2.id).driver_id == d2.id

    @pytest.mark.asyncio
    async def test_busy_driver_is_last_resort_with_multiple_jobs(self, engine, factory, store):
        factory.policy(allow_multiple_jobs=True)
        busy = await factory.driver("busy", idle_minutes=60, status=DriverStatus.BUSY)
        free = await factory.driver("free", idle_minutes=1)
        b1 = await factory.booking(passenger_id=1)
        b2 = await factory.booking(passenger_id=2)

        await _start(engine, b1)
        await _start(engine, b2)
        assert store.open_attempt(b1.id).driver_id == free.id
        assert store.open_attempt(b2.id).driver_id == busy.id



class TestRematching:
    @pytest.mark.asyncio
    async def test_all_drivers_reject_gives_no_driver_found(
        self, engine, factory, store, clock, delivery
    ):
        factory.policy(
            max_rematch_attempts=3, driver_response_timeout=30, delay_between_matches=5
        )
        drivers = [await factory.driver(f"d{i}", idle_minutes=30 - 10 * i) for i in range(3)]
        booking = await factory.booking(passenger_id=9)

        task = await _start(engine, booking)
        offered = []
        for _ in range(3):
            attempt = store.open_attempt(booking.id)
            offered.append(attempt.driver_id)
            result = await engine.scheduler.respond(attempt.id, attempt.driver_id, False)
            assert result == ResponseResult.REJECTED
            await clock.advance(5)

        outcome = await task
        assert offered == [d.id for d in drivers]
        assert outcome.result == DispatchResult.NO_DRIVER_FOUND
        assert isinstance(outcome.error, NoDriverFound)
        assert outcome.error.reason == "retries_exhausted"

        stored = store.booking(booking.id)
        assert stored.status == BookingStatus.CANCELLED
        assert stored.cancellation.reason == CancellationReason.NO_DRIVER_AVAILABLE.value
        assert stored.rematch_count == 3
        assert all(store.driver(d.id).status == DriverStatus.AVAILABLE for d in drivers)

        await engine.notifier.drain()
        [(passenger, _)] = delivery.of_type("no_driver_found")
        assert passenger == 9

    @pytest.mark.asyncio
    async def test_next_offer_waits_delay_between_matches(self, engine, factory, store, clock):
        factory.policy(delay_between_matches=5)
        d1 = await factory.driver("d1", idle_minutes=20)
        d2 = await factory.driver("d2", idle_minutes=10)
        booking = await factory.booking()

        await _start(engine, booking)
        first = store.open_attempt(booking.id)
        await engine.scheduler.respond(first.id, d1.id, False)
        await settle()
        assert store.open_attempt(booking.id) is None

        await clock.advance(4)
        assert store.open_attempt(booking.id) is None

        await clock.advance(1)
        second = store.open_attempt(booking.id)
        assert second.driver_id == d2.id
        assert second.offered_at == T0 + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_expiry_counts_as_rejection(self, engine, factory, store, clock, delivery):
        factory.policy(driver_response_timeout=20, delay_between_matches=5)
        d1 = await factory.driver("d1", idle_minutes=20)
        d2 = await factory.driver("d2", idle_minutes=10)
        booking = await factory.booking()

        await _start(engine, booking)
        first = store.open_attempt(booking.id)
        await clock.advance(20)

        assert store.attempts[first.id].outcome == AttemptOutcome.EXPIRED
        assert store.attempts[first.id].responded_at == T0 + timedelta(seconds=20)
        assert store.booking(booking.id).rematch_count == 1

        await clock.advance(5)
        second = store.open_attempt(booking.id)
        assert second.driver_id == d2.id

        await engine.notifier.drain()
        revoked = delivery.of_type("offer_revoked")
        assert revoked[0][0] == d1.user_id
        assert revoked[0][1]["data"]["reason"] == "expired"

    @pytest.mark.asyncio
    async def test_total_search_timeout(self, engine, factory, store, clock):
        factory.policy(
            max_rematch_attempts=10,
            total_search_timeout=60,
            driver_response_timeout=30,
            delay_between_matches=5,
        )
        for i in range(3):
            await factory.driver(f"d{i}", idle_minutes=30 - i)
        booking = await factory.booking()

        task = await _start(engine, booking)
        await clock.advance(100)

        outcome = await task
        assert outcome.result == DispatchResult.NO_DRIVER_FOUND
        assert outcome.error.reason == "search_timeout"
        attempts = store.attempts_for(booking.id)
        assert [a.outcome for a in attempts] == [AttemptOutcome.EXPIRED] * 2
        # Second offer went out at +35s; its countdown stops at the search end
        assert attempts[1].offered_at == T0 + timedelta(seconds=35)
        assert attempts[1].deadline == T0 + timedelta(seconds=60)
        assert store.booking(booking.id).status == BookingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_accept_after_search_end_is_discarded(self, engine, factory, store, clock):
        factory.policy(
            total_search_timeout=60,
            driver_response_timeout=30,
            delay_between_matches=5,
        )
        await factory.driver("d1", idle_minutes=20)
        d2 = await factory.driver("d2", idle_minutes=10)
        booking = await factory.booking()

        await _start(engine, booking)
        await clock.advance(35)
        second = store.open_attempt(booking.id)
        assert second.driver_id == d2.id
        assert second.deadline == T0 + timedelta(seconds=60)

        clock.jump(27)
        result = await engine.scheduler.respond(second.id, d2.id, True)
        assert result == ResponseResult.DISCARDED
        assert store.booking(booking.id).status == BookingStatus.CONFIRMED
        assert store.driver(d2.id).status == DriverStatus.AVAILABLE


    @pytest.mark.asyncio
    async def test_no_available_drivers_fails_immediately(self, engine, factory, store):
        await factory.driver("off", status=DriverStatus.OFFLINE)
        booking = await factory.booking()

        task = await _start(engine, booking)
        outcome = await task
        assert outcome.result == DispatchResult.NO_DRIVER_FOUND
        assert outcome.error.reason == "no_candidates"
        assert store.attempts_for(booking.id) == []
        assert store.booking(booking.id).status == BookingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_accept_from_driver_gone_offline_counts_as_reject(
        self, engine, factory, store
    ):
        driver = await factory.driver("d1", idle_minutes=20)
        await factory.driver("d2", idle_minutes=10)
        booking = await factory.booking()

        await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        await engine.lifecycle.set_driver_status(driver.id, DriverStatus.OFFLINE)

        result = await engine.scheduler.respond(attempt.id, driver.id, True)
        assert result == ResponseResult.REJECTED
        assert store.attempts[attempt.id].outcome == AttemptOutcome.REJECTED
        assert store.booking(booking.id).status == BookingStatus.CONFIRMED
        assert store.booking(booking.id).rematch_count == 1


class TestLateAndRacingResponses:
    @pytest.mark.asyncio
    async def test_response_at_deadline_is_discarded(self, engine, factory, store, clock):
        driver = await factory.driver()
        booking = await factory.booking()

        await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        clock.jump(15)

        result = await engine.scheduler.respond(attempt.id, driver.id, True)
        assert result == ResponseResult.DISCARDED
        assert store.booking(booking.id).status == BookingStatus.CONFIRMED

        await clock.advance(0)
        assert store.attempts[attempt.id].outcome == AttemptOutcome.EXPIRED

    @pytest.mark.asyncio
    async def test_response_after_expiry_is_discarded(self, engine, factory, store, clock):
        driver = await factory.driver()
        booking = await factory.booking()

        await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        await clock.advance(15)

        assert await engine.scheduler.respond(attempt.id, driver.id, True) == ResponseResult.DISCARDED
        assert store.attempts[attempt.id].outcome == AttemptOutcome.EXPIRED

    @pytest.mark.asyncio
    async def test_response_from_other_driver_is_discarded(self, engine, factory, store):
        driver = await factory.driver("d1", idle_minutes=10)
        other = await factory.driver("d2", idle_minutes=1)
        booking = await factory.booking()

        await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        assert attempt.driver_id == driver.id

        assert await engine.scheduler.respond(attempt.id, other.id, True) == ResponseResult.DISCARDED
        assert store.attempts[attempt.id].outcome is None

    @pytest.mark.asyncio
    async def test_unknown_attempt_is_discarded(self, engine):
        assert await engine.scheduler.respond(999, 1, True) == ResponseResult.DISCARDED

    @pytest.mark.asyncio
    async def test_concurrent_accepts_settle_exactly_once(self, engine, factory, store):
        driver = await factory.driver()
        booking = await factory.booking()

        task = await _start(engine, booking)
        attempt = store.open_attempt(booking.id)

        results = await asyncio.gather(
            engine.scheduler.respond(attempt.id, driver.id, True),
            engine.scheduler.respond(attempt.id, driver.id, True),
        )
        assert sorted(results) == sorted([ResponseResult.ACCEPTED, ResponseResult.DISCARDED])
        assert (await task).result == DispatchResult.ASSIGNED
        assert store.booking(booking.id).version == 2

    @pytest.mark.asyncio
    async def test_accept_racing_reject_first_one_wins(self, engine, factory, store):
        driver = await factory.driver()
        booking = await factory.booking()

        await _start(engine, booking)
        attempt = store.open_attempt(booking.id)

        accept, reject = await asyncio.gather(
            engine.scheduler.respond(attempt.id, driver.id, True),
            engine.scheduler.respond(attempt.id, driver.id, False),
        )
        assert accept == ResponseResult.ACCEPTED
        assert reject == ResponseResult.DISCARDED
        assert store.booking(booking.id).rematch_count == 0

    @staticmethod
    def _yield_after_driver_read(monkeypatch):
        original = _Drivers.get

        async def get(self, driver_id):
            driver = await original(self, driver_id)
            await asyncio.sleep(0)
            return driver

        monkeypatch.setattr(_Drivers, "get", get)

    @pytest.mark.asyncio
    async def test_accept_and_admin_assign_cannot_share_driver(
        self, engine, factory, store, monkeypatch
    ):
        driver = await factory.driver()
        first = await factory.booking(passenger_id=1)
        second = await factory.booking(passenger_id=2)

        task = await _start(engine, first)
        attempt = store.open_attempt(first.id)
        self._yield_after_driver_read(monkeypatch)

        accepted, assigned = await asyncio.gather(
            engine.scheduler.respond(attempt.id, driver.id, True),
            engine.lifecycle.override_status(
                second.id, BookingStatus.DRIVER_ASSIGNED, driver_id=driver.id
            ),
            return_exceptions=True,
        )
        assert accepted == ResponseResult.ACCEPTED
        assert isinstance(assigned, DriverUnavailable)
        assert (await task).result == DispatchResult.ASSIGNED
        assert store.booking(first.id).assigned_driver_id == driver.id
        assert store.booking(second.id).status == BookingStatus.CONFIRMED
        assert store.booking(second.id).assigned_driver_id is None
        assert store.driver(driver.id).status == DriverStatus.BUSY

    @pytest.mark.asyncio
    async def test_admin_assign_first_turns_accept_into_reject(
        self, engine, factory, store, monkeypatch
    ):
        driver = await factory.driver()
        first = await factory.booking(passenger_id=1)
        second = await factory.booking(passenger_id=2)

        await _start(engine, first)
        attempt = store.open_attempt(first.id)
        self._yield_after_driver_read(monkeypatch)

        assigned, accepted = await asyncio.gather(
            engine.lifecycle.override_status(
                second.id, BookingStatus.DRIVER_ASSIGNED, driver_id=driver.id
            ),
            engine.scheduler.respond(attempt.id, driver.id, True),
            return_exceptions=True,
        )
        assert assigned.assigned_driver_id == driver.id
        assert accepted == ResponseResult.REJECTED
        assert store.attempts[attempt.id].outcome == AttemptOutcome.REJECTED
        assert store.booking(first.id).status == BookingStatus.CONFIRMED
        assert store.booking(first.id).assigned_driver_id is None



class TestInterrupts:
    @pytest.mark.asyncio
    async def test_cancel_revokes_outstanding_offer(
        self, engine, factory, store, clock, delivery
    ):
        driver = await factory.driver()
        booking = await factory.booking()

        task = await _start(engine, booking)
        attempt = store.open_attempt(booking.id)

        cancelled = await engine.lifecycle.cancel(booking.id)
        assert cancelled.status == BookingStatus.CANCELLED

        outcome = await task
        assert outcome.result == DispatchResult.ABORTED
        assert store.attempts[attempt.id].outcome == AttemptOutcome.REVOKED
        assert await engine.scheduler.respond(attempt.id, driver.id, True) == ResponseResult.DISCARDED
        assert store.booking(booking.id).status == BookingStatus.CANCELLED
        assert store.driver(driver.id).status == DriverStatus.AVAILABLE

        await settle()
        assert clock.pending_timers == 0
        assert not engine.scheduler.is_dispatching(booking.id)

        await engine.notifier.drain()
        [(user_id, message)] = delivery.of_type("offer_revoked")
        assert user_id == driver.user_id
        assert message["data"]["reason"] == "booking_cancelled"

    @pytest.mark.asyncio
    async def test_cancel_during_delay_stops_process(self, engine, factory, store, clock):
        d1 = await factory.driver("d1", idle_minutes=20)
        await factory.driver("d2", idle_minutes=10)
        booking = await factory.booking()

        task = await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        await engine.scheduler.respond(attempt.id, d1.id, False)
        await settle()

        await engine.lifecycle.cancel(booking.id)
        assert (await task).result == DispatchResult.ABORTED

        await clock.advance(30)
        assert len(store.attempts_for(booking.id)) == 1

    @pytest.mark.asyncio
    async def test_admin_assignment_interrupts_dispatch(self, engine, factory, store):
        offered = await factory.driver("offered", idle_minutes=20)
        chosen = await factory.driver("chosen", idle_minutes=1)
        booking = await factory.booking()

        task = await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        assert attempt.driver_id == offered.id

        updated = await engine.lifecycle.override_status(
            booking.id, BookingStatus.DRIVER_ASSIGNED, driver_id=chosen.id
        )
        assert updated.assigned_driver_id == chosen.id
        assert (await task).result == DispatchResult.ABORTED
        assert store.attempts[attempt.id].outcome == AttemptOutcome.REVOKED
        assert store.driver(chosen.id).status == DriverStatus.BUSY
        assert store.driver(offered.id).status == DriverStatus.AVAILABLE


class TestBeginDispatchGuards:
    @pytest.mark.asyncio
    async def test_requires_confirmed_booking(self, engine, factory):
        booking = await factory.booking(status=BookingStatus.PENDING)
        with pytest.raises(InvalidTransition):
            await engine.scheduler.begin_dispatch(booking.id)
        assert not engine.scheduler.is_dispatching(booking.id)

    @pytest.mark.asyncio
    async def test_unknown_booking(self, engine):
        with pytest.raises(BookingNotFound):
            await engine.scheduler.begin_dispatch(404)

    @pytest.mark.asyncio
    async def test_invalid_stored_policy_refuses_to_start(self, engine, factory, store):
        await factory.driver()
        booking = await factory.booking()
        store.policy_rows.append({"max_rematch_attempts": 0})

        with pytest.raises(PolicyOutOfRange):
            await engine.scheduler.begin_dispatch(booking.id)
        assert not engine.scheduler.is_dispatching(booking.id)
        assert store.attempts_for(booking.id) == []


class TestOfferSweep:
    @pytest.mark.asyncio
    async def test_orphaned_offer_expires_and_search_resumes(
        self, engine, factory, store, clock
    ):
        d1 = await factory.driver("d1", idle_minutes=20)
        d2 = await factory.driver("d2", idle_minutes=10)
        booking = await factory.booking(search_started_at=T0)
        orphan = await InMemoryUnitOfWork(store).attempts.add(
            DispatchAttempt(
                booking_id=booking.id,
                driver_id=d1.id,
                offered_at=T0,
                deadline=T0 + timedelta(seconds=15),
            )
        )
        clock.jump(20)

        assert await engine.scheduler.expire_overdue_offers() == 1
        assert store.attempts[orphan.id].outcome == AttemptOutcome.EXPIRED
        assert store.booking(booking.id).rematch_count == 1
        assert engine.scheduler.is_dispatching(booking.id)

        await settle()
        assert store.open_attempt(booking.id).driver_id == d2.id

    @pytest.mark.asyncio
    async def test_live_offers_are_left_to_their_process(self, engine, factory, store, clock):
        await factory.driver()
        booking = await factory.booking()

        await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        clock.jump(20)

        assert await engine.scheduler.expire_overdue_offers() == 0
        assert store.attempts[attempt.id].outcome is None

    @pytest.mark.asyncio
    async def test_offers_not_yet_due_are_untouched(self, engine, factory, store, clock):
        driver = await factory.driver()
        booking = await factory.booking(search_started_at=T0)
        await InMemoryUnitOfWork(store).attempts.add(
            DispatchAttempt(
                booking_id=booking.id,
                driver_id=driver.id,
                offered_at=T0,
                deadline=T0 + timedelta(seconds=15),
            )
        )
        assert await engine.scheduler.expire_overdue_offers() == 0

    @pytest.mark.asyncio
    async def test_offers_within_grace_are_left_alone(self, engine, factory, store, clock):
        driver = await factory.driver()
        booking = await factory.booking(search_started_at=T0)
        orphan = await InMemoryUnitOfWork(store).attempts.add(
            DispatchAttempt(
                booking_id=booking.id,
                driver_id=driver.id,
                offered_at=T0,
                deadline=T0 + timedelta(seconds=15),
            )
        )
        clock.jump(20)

        assert await engine.scheduler.expire_overdue_offers(grace_seconds=30) == 0
        assert store.attempts[orphan.id].outcome is None
        assert await engine.scheduler.expire_overdue_offers(grace_seconds=0) == 1

    @pytest.mark.asyncio
    async def test_expiry_never_lowers_stored_rematch_count(
        self, engine, factory, store, clock
    ):
        factory.policy(max_rematch_attempts=2)
        driver = await factory.driver()
        booking = await factory.booking(search_started_at=T0, rematch_count=3)
        await InMemoryUnitOfWork(store).attempts.add(
            DispatchAttempt(
                booking_id=booking.id,
                driver_id=driver.id,
                offered_at=T0,
                deadline=T0 + timedelta(seconds=15),
            )
        )
        clock.jump(20)

        assert await engine.scheduler.expire_overdue_offers() == 1
        await settle()
        assert store.booking(booking.id).rematch_count == 3


class TestSharedStoreInstances:
    """Two engines over one store, as two API instances over one database."""

    @pytest_asyncio.fixture
    async def other(self, store, delivery, clock):
        other = build_engine(
            lambda: InMemoryUnitOfWork(store), LocalBookingLocks(), delivery, clock
        )
        yield other
        await other.shutdown()

    @pytest.mark.asyncio
    async def test_accept_through_other_instance(self, engine, other, factory, store, clock):
        driver = await factory.driver()
        booking = await factory.booking()

        task = await _start(engine, booking)
        attempt = store.open_attempt(booking.id)

        result = await other.scheduler.respond(attempt.id, driver.id, True)
        assert result == ResponseResult.ACCEPTED
        assert store.booking(booking.id).status == BookingStatus.DRIVER_ASSIGNED
        assert store.driver(driver.id).status == DriverStatus.BUSY

        await clock.advance(15)
        outcome = await task
        assert outcome.result == DispatchResult.ASSIGNED
        assert outcome.driver_id == driver.id
        assert store.attempts[attempt.id].outcome == AttemptOutcome.ACCEPTED
        assert len(store.attempts_for(booking.id)) == 1

    @pytest.mark.asyncio
    async def test_reject_through_other_instance_moves_on(
        self, engine, other, factory, store, clock
    ):
        d1 = await factory.driver("d1", idle_minutes=20)
        d2 = await factory.driver("d2", idle_minutes=10)
        booking = await factory.booking()

        await _start(engine, booking)
        first = store.open_attempt(booking.id)
        assert first.driver_id == d1.id

        assert await other.scheduler.respond(first.id, d1.id, False) == ResponseResult.REJECTED
        assert store.booking(booking.id).rematch_count == 1

        await clock.advance(15)
        assert store.attempts[first.id].outcome == AttemptOutcome.REJECTED
        await clock.advance(5)
        assert store.open_attempt(booking.id).driver_id == d2.id
        assert store.booking(booking.id).rematch_count == 1

    @pytest.mark.asyncio
    async def test_late_answer_through_other_instance_is_discarded(
        self, engine, other, factory, store, clock
    ):
        driver = await factory.driver()
        booking = await factory.booking()

        await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        clock.jump(15)

        assert await other.scheduler.respond(attempt.id, driver.id, True) == ResponseResult.DISCARDED
        assert store.attempts[attempt.id].outcome is None

    @pytest.mark.asyncio
    async def test_other_instance_sweep_waits_out_the_grace(
        self, engine, other, factory, store, clock
    ):
        await factory.driver()
        booking = await factory.booking()

        await _start(engine, booking)
        attempt = store.open_attempt(booking.id)
        clock.jump(20)

        assert await other.scheduler.expire_overdue_offers(grace_seconds=30) == 0
        assert store.attempts[attempt.id].outcome is None
