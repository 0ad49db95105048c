"""
Fee Policy Engine
=================

Pure functions over ``(booking, time, policy)`` -- no I/O, no clock reads,
identical inputs always give an identical ``FeeQuote``.

Cancellation rules, first match wins
------------------------------------
1. no driver was ever assigned            -> 0, ``no_driver_assigned``
2. within ``free_cancellation_window``    -> 0, ``within_free_window``
3. driver later than ``driver_late_threshold`` (waiver enabled)
                                          -> 0, ``driver_late_waiver``
4. fee disabled                           -> 0, ``fee_disabled``
5. otherwise                              -> ``late_cancellation_fee``

No-show rules
-------------
1. waited less than ``no_show_wait_time`` -> not eligible
2. fee disabled                           -> 0, ``fee_disabled``
3. otherwise                              -> ``no_show_fee``

The booking-limit guards and the dispute window check live here too: they
read the same policy snapshot and return typed results instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .entities import Booking
from .enums import BookingStatus, FeeReason
from .errors import ActiveBookingLimitExceeded, CancellationLimitExceeded
from .policy import Policy

DISPUTABLE_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW}
)


@dataclass(frozen=True)
class FeeQuote:
    fee: float
    reason: FeeReason
    driver_payout: float = 0.0
    eligible: bool = True

    @property
    def waived(self) -> bool:
        """True when a fee could apply in principle but the rules zeroed it."""
        return self.eligible and self.fee == 0 and self.reason in (
            FeeReason.WITHIN_FREE_WINDOW,
            FeeReason.DRIVER_LATE_WAIVER,
            FeeReason.FEE_DISABLED,
        )


def driver_payout(fee: float, percent: float) -> float:
    return round(fee * percent / 100, 2)


def driver_lateness(booking: Booking, now: datetime) -> timedelta:
    """How late the driver is against the promised pickup time."""
    if booking.pickup_at is None:
        return timedelta(0)
    reference = booking.driver_arrived_at or now
    return reference - booking.pickup_at


def compute_cancellation_fee(booking: Booking, now: datetime, policy: Policy) -> FeeQuote:
    if booking.assigned_at is None:
        return FeeQuote(0.0, FeeReason.NO_DRIVER_ASSIGNED)

    since_assignment = (now - booking.assigned_at).total_seconds()
    if since_assignment <= policy.free_cancellation_window:
        return FeeQuote(0.0, FeeReason.WITHIN_FREE_WINDOW)

    if (
        policy.enable_driver_late_waiver
        and driver_lateness(booking, now).total_seconds() > policy.driver_late_threshold
    ):
        return FeeQuote(0.0, FeeReason.DRIVER_LATE_WAIVER)

    if not policy.enable_cancellation_fee:
        return FeeQuote(0.0, FeeReason.FEE_DISABLED)

    fee = float(policy.late_cancellation_fee)
    return FeeQuote(
        fee,
        FeeReason.LATE_CANCELLATION,
        driver_payout(fee, policy.cancellation_fee_to_driver_percent),
    )


def compute_no_show_fee(booking: Booking, waited: timedelta, policy: Policy) -> FeeQuote:
    if waited.total_seconds() < policy.no_show_wait_time:
        return FeeQuote(0.0, FeeReason.NOT_YET_ELIGIBLE, eligible=False)

    if not policy.enable_no_show_fee:
        return FeeQuote(0.0, FeeReason.FEE_DISABLED)

    fee = float(policy.no_show_fee)
    return FeeQuote(
        fee,
        FeeReason.NO_SHOW,
        driver_payout(fee, policy.no_show_fee_to_driver_percent),
    )


# ── Guards ────────────────────────────────────────────────────────────


def check_active_booking_limit(
    active_count: int, policy: Policy
) -> Optional[ActiveBookingLimitExceeded]:
    if active_count >= policy.max_active_bookings:
        return ActiveBookingLimitExceeded(policy.max_active_bookings)
    return None


def check_cancellation_limit(
    cancelled_today: int, policy: Policy
) -> Optional[CancellationLimitExceeded]:
    if policy.enable_cancellation_limit and cancelled_today >= policy.max_cancellations_per_day:
        return CancellationLimitExceeded(policy.max_cancellations_per_day)
    return None


def dispute_reference_time(booking: Booking) -> Optional[datetime]:
    if booking.completed_at is not None:
        return booking.completed_at
    if booking.cancellation is not None:
        return booking.cancellation.at
    return None


def dispute_window_open(booking: Booking, now: datetime, policy: Policy) -> bool:
    if not policy.enable_dispute or booking.status not in DISPUTABLE_STATUSES:
        return False
    reference = dispute_reference_time(booking)
    if reference is None:
        return False
    return now <= reference + timedelta(hours=policy.dispute_window)
