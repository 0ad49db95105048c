"""
SQLAlchemy ORM models.

Tables
------
* ``bookings``           -- one transport request, with its cancellation record
* ``drivers``            -- driver registry (availability + earnings)
* ``dispatch_attempts``  -- audit log of every offer made to a driver
* ``policies``           -- versioned policy snapshots (latest row wins)
* ``disputes``           -- manual-review flags raised by passengers

Indexes
-------
* **B-Tree** on ``bookings.status`` / ``passenger_id`` for the active-booking
  guard, on ``dispatch_attempts.booking_id`` / ``deadline`` for the candidate
  filter and the offer sweeper, and on ``drivers.status``.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)

from .database import Base
from booking_engine.domain.enums import (
    AttemptOutcome,
    BookingStatus,
    DriverStatus,
    PaymentStatus,
)


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    name = Column(String(120), nullable=False, default="")
    status = Column(Enum(DriverStatus), default=DriverStatus.OFFLINE, nullable=False)
    idle_since = Column(DateTime(timezone=True), nullable=True)
    total_trips = Column(Integer, default=0, nullable=False)
    total_earnings = Column(Float, default=0.0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_drivers_status", "status"),)


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    passenger_id = Column(Integer, nullable=False)
    status = Column(Enum(BookingStatus), default=BookingStatus.PENDING, nullable=False)
    payment_status = Column(
        Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    pickup_at = Column(DateTime(timezone=True), nullable=True)
    total_cost = Column(Float, nullable=False, default=0.0)

    assigned_driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    driver_arrived_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    rematch_count = Column(Integer, default=0, nullable=False)
    search_started_at = Column(DateTime(timezone=True), nullable=True)

    # Cancellation record (flattened, all NULL until cancelled)
    cancellation_reason = Column(String(40), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(20), nullable=True)
    cancellation_fee = Column(Float, nullable=True)
    cancellation_fee_waived = Column(Boolean, nullable=True)
    waived_reason_code = Column(String(40), nullable=True)
    cancellation_driver_payout = Column(Float, nullable=True)
    cancellation_driver_id = Column(Integer, nullable=True)

    has_dispute = Column(Boolean, default=False, nullable=False)
    status_history = Column(JSON, nullable=False, default=list)

    # Optimistic concurrency token, bumped on every save
    version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_bookings_status", "status"),
        Index("idx_bookings_passenger", "passenger_id"),
        Index("idx_bookings_driver", "assigned_driver_id"),
    )


class DispatchAttemptModel(Base):
    __tablename__ = "dispatch_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    offered_at = Column(DateTime(timezone=True), nullable=False)
    deadline = Column(DateTime(timezone=True), nullable=False)
    outcome = Column(Enum(AttemptOutcome), nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_attempts_booking", "booking_id"),
        Index("idx_attempts_driver", "driver_id"),
        Index("idx_attempts_deadline", "deadline"),
    )


class PolicyModel(Base):
    __tablename__ = "policies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(Integer, nullable=False, unique=True)
    data = Column(JSON, nullable=False)
    updated_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class DisputeModel(Base):
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, unique=True)
    passenger_id = Column(Integer, nullable=False)
    driver_id = Column(Integer, nullable=True)
    reason = Column(String(40), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), default="open", nullable=False)
    fee_under_dispute = Column(Float, default=0.0, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=True)
