"""Domain enumerations and state-transition rules."""

import enum


class BookingStatus(str, enum.Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DRIVER_ASSIGNED = "driver_assigned"
    DRIVER_EN_ROUTE = "driver_en_route"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    REFUNDED = "refunded"


# State machine: maps current status -> set of valid next statuses
BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.AWAITING_PAYMENT: {BookingStatus.PENDING, BookingStatus.CANCELLED},
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.DRIVER_ASSIGNED, BookingStatus.CANCELLED},
    BookingStatus.DRIVER_ASSIGNED: {
        BookingStatus.DRIVER_EN_ROUTE,
        BookingStatus.CANCELLED,
    },
    BookingStatus.DRIVER_EN_ROUTE: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    },
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: {BookingStatus.REFUNDED},
    BookingStatus.CANCELLED: {BookingStatus.REFUNDED},
    BookingStatus.NO_SHOW: {BookingStatus.REFUNDED},
    BookingStatus.REFUNDED: set(),
}

TERMINAL_STATUSES: frozenset[BookingStatus] = frozenset(
    {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
        BookingStatus.REFUNDED,
    }
)

# A driver is attached to the booking exactly while it sits in one of these
DRIVER_HELD_STATUSES: frozenset[BookingStatus] = frozenset(
    {
        BookingStatus.DRIVER_ASSIGNED,
        BookingStatus.DRIVER_EN_ROUTE,
        BookingStatus.IN_PROGRESS,
    }
)


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    PARTIAL = "partial"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class DriverStatus(str, enum.Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class AttemptOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Actor(str, enum.Enum):
    PASSENGER = "passenger"
    DRIVER = "driver"
    ADMIN = "admin"
    SYSTEM = "system"


class CancellationReason(str, enum.Enum):
    PASSENGER_REQUEST = "passenger_request"
    CHANGE_OF_PLANS = "change_of_plans"
    DRIVER_TOO_FAR = "driver_too_far"
    NO_DRIVER_AVAILABLE = "no_driver_available"
    CUSTOMER_NO_SHOW = "customer_no_show"
    ADMIN_OVERRIDE = "admin_override"
    OTHER = "other"


class FeeReason(str, enum.Enum):
    NO_DRIVER_ASSIGNED = "no_driver_assigned"
    WITHIN_FREE_WINDOW = "within_free_window"
    DRIVER_LATE_WAIVER = "driver_late_waiver"
    FEE_DISABLED = "fee_disabled"
    LATE_CANCELLATION = "late_cancellation"
    NOT_YET_ELIGIBLE = "not_yet_eligible"
    NO_SHOW = "no_show"
    NO_DRIVER_AVAILABLE = "no_driver_available"
    ADMIN_OVERRIDE = "admin_override"
    DRIVER_CANCELLED = "driver_cancelled"


class DisputeReason(str, enum.Enum):
    WRONG_CHARGE = "wrong_charge"
    SERVICE_NOT_PROVIDED = "service_not_provided"
    DRIVER_MISCONDUCT = "driver_misconduct"
    SAFETY_CONCERN = "safety_concern"
    WRONG_ROUTE = "wrong_route"
    VEHICLE_ISSUE = "vehicle_issue"
    UNFAIR_FEE = "unfair_fee"
    OTHER = "other"


class NotificationKind(str, enum.Enum):
    OFFER = "offer"
    OFFER_REVOKED = "offer_revoked"
    DRIVER_ASSIGNED = "driver_assigned"
    JOB_CONFIRMED = "job_confirmed"
    STATUS_CHANGED = "status_changed"
    DRIVER_ARRIVED = "driver_arrived"
    NO_DRIVER_FOUND = "no_driver_found"
    BOOKING_CANCELLED = "booking_cancelled"
    JOB_CANCELLED = "job_cancelled"
    NO_SHOW = "no_show"
    DISPUTE_OPENED = "dispute_opened"
