"""
Status Transition Validator
===========================

The single choke point for every booking status change -- passenger,
driver, dispatcher and admin paths all call ``request_transition``.

* Only edges in ``BOOKING_TRANSITIONS`` are accepted; nothing is clamped.
* Requesting the current status is a no-op success that touches nothing.
* ``assigned_driver_id`` is cleared when leaving ``DRIVER_HELD_STATUSES``
  and required when entering them.

The function is pure: it returns a ``TransitionResult`` and never raises.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from .entities import Booking, StatusChange
from .enums import Actor, BOOKING_TRANSITIONS, BookingStatus, DRIVER_HELD_STATUSES
from .errors import InvalidTransition


@dataclass(frozen=True)
class TransitionResult:
    booking: Booking
    changed: bool = False
    error: Optional[InvalidTransition] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Booking:
        if self.error is not None:
            raise self.error
        return self.booking


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target == current or target in BOOKING_TRANSITIONS.get(current, set())


def request_transition(
    booking: Booking,
    target: BookingStatus,
    *,
    at: Optional[datetime] = None,
    actor: Actor = Actor.SYSTEM,
    note: Optional[str] = None,
    **changes,
) -> TransitionResult:
    """Validate ``booking.status -> target`` and return the updated copy.

    *changes* are extra field updates applied together with the status
    (e.g. ``assigned_driver_id`` when assigning a driver).  When *at* is
    given a status-history entry is appended.
    """
    current = BookingStatus(booking.status)
    target = BookingStatus(target)

    if target == current:
        return TransitionResult(booking)

    if target not in BOOKING_TRANSITIONS.get(current, set()):
        return TransitionResult(booking, error=InvalidTransition(current, target))

    if target in DRIVER_HELD_STATUSES:
        driver_id = changes.get("assigned_driver_id", booking.assigned_driver_id)
        if driver_id is None:
            return TransitionResult(
                booking,
                error=InvalidTransition(current, target, "a driver must be assigned"),
            )
    else:
        changes["assigned_driver_id"] = None

    history = list(booking.status_history)
    if at is not None:
        history.append(StatusChange(status=target, at=at, actor=actor, note=note))

    updated = replace(booking, status=target, status_history=history, **changes)
    return TransitionResult(updated, changed=True)
