"""
Booking policy snapshot.

The policy is an immutable value: callers read it once per operation and
pass it explicitly into every dispatch / fee decision.  Durations are in
seconds except ``dispute_window`` (hours), money in the booking currency.

Out-of-range values are rejected at construction time -- there is no
clamping and no silent fallback to defaults.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Mapping

from .errors import PolicyOutOfRange

# field -> (min, max), inclusive
POLICY_BOUNDS: dict[str, tuple[float, float]] = {
    "max_rematch_attempts": (1, 10),
    "driver_response_timeout": (10, 120),
    "total_search_timeout": (60, 600),
    "delay_between_matches": (1, 30),
    "free_cancellation_window": (60, 1800),
    "late_cancellation_fee": (0, 500),
    "no_show_wait_time": (60, 1800),
    "no_show_fee": (0, 500),
    "cancellation_fee_to_driver_percent": (0, 100),
    "no_show_fee_to_driver_percent": (0, 100),
    "driver_late_threshold": (60, 1800),
    "max_active_bookings": (1, 5),
    "max_cancellations_per_day": (1, 10),
    "dispute_window": (1, 168),
}

_INTEGER_FIELDS = {
    "max_rematch_attempts",
    "max_active_bookings",
    "max_cancellations_per_day",
    "dispute_window",
    "version",
}


@dataclass(frozen=True)
class Policy:
    # Dispatch
    max_rematch_attempts: int = 3
    driver_response_timeout: float = 15
    total_search_timeout: float = 300
    delay_between_matches: float = 5
    allow_multiple_jobs: bool = False

    # Cancellation
    enable_cancellation_fee: bool = True
    free_cancellation_window: float = 180
    late_cancellation_fee: float = 50.0
    cancellation_fee_to_driver_percent: float = 100
    enable_driver_late_waiver: bool = True
    driver_late_threshold: float = 300

    # No-show
    enable_no_show_fee: bool = True
    no_show_wait_time: float = 300
    no_show_fee: float = 50.0
    no_show_fee_to_driver_percent: float = 100

    # Passenger guards
    max_active_bookings: int = 1
    enable_cancellation_limit: bool = True
    max_cancellations_per_day: int = 3

    # Disputes
    enable_dispute: bool = True
    dispute_window: int = 48

    version: int = 1

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type in ("bool", bool):
                if not isinstance(value, bool):
                    raise PolicyOutOfRange(f.name, value, (False, True))
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise PolicyOutOfRange(f.name, value, POLICY_BOUNDS.get(f.name, (1, "inf")))
            if f.name in _INTEGER_FIELDS and int(value) != value:
                raise PolicyOutOfRange(f.name, value, POLICY_BOUNDS.get(f.name, (1, "inf")))
            if f.name == "version":
                if value < 1:
                    raise PolicyOutOfRange(f.name, value, (1, "inf"))
                continue
            low, high = POLICY_BOUNDS[f.name]
            if not low <= value <= high:
                raise PolicyOutOfRange(f.name, value, (low, high))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "Policy":
        """Merge stored values over the defaults, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def updated(self, **changes: Any) -> "Policy":
        """Return a validated copy with *changes* applied and version bumped."""
        changes.pop("version", None)
        return replace(self, version=self.version + 1, **changes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
