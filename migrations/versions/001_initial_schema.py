"""Initial schema: drivers, bookings, dispatch attempts, policies, disputes.

Revision ID: 001
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


BOOKING_STATUSES = (
    "AWAITING_PAYMENT",
    "PENDING",
    "CONFIRMED",
    "DRIVER_ASSIGNED",
    "DRIVER_EN_ROUTE",
    "IN_PROGRESS",
    "COMPLETED",
    "CANCELLED",
    "NO_SHOW",
    "REFUNDED",
)
PAYMENT_STATUSES = (
    "PENDING",
    "PROCESSING",
    "PAID",
    "PARTIAL",
    "FAILED",
    "REFUNDED",
    "CANCELLED",
)


def upgrade() -> None:
    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, nullable=False),
        sa.Column("name", sa.String(120), nullable=False, server_default=""),
        sa.Column(
            "status",
            sa.Enum("AVAILABLE", "BUSY", "OFFLINE", name="driverstatus"),
            nullable=False,
            server_default="OFFLINE",
        ),
        sa.Column("idle_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_trips", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_earnings", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_drivers_status", "drivers", ["status"])

    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("passenger_id", sa.Integer, nullable=False),
        sa.Column(
            "status",
            sa.Enum(*BOOKING_STATUSES, name="bookingstatus"),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column(
            "payment_status",
            sa.Enum(*PAYMENT_STATUSES, name="paymentstatus"),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("pickup_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_cost", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "assigned_driver_id",
            sa.Integer,
            sa.ForeignKey("drivers.id"),
            nullable=True,
        ),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("driver_arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rematch_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("search_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(40), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(20), nullable=True),
        sa.Column("cancellation_fee", sa.Float, nullable=True),
        sa.Column("cancellation_fee_waived", sa.Boolean, nullable=True),
        sa.Column("waived_reason_code", sa.String(40), nullable=True),
        sa.Column("cancellation_driver_payout", sa.Float, nullable=True),
        sa.Column("cancellation_driver_id", sa.Integer, nullable=True),
        sa.Column("has_dispute", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("status_history", sa.JSON, nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_bookings_status", "bookings", ["status"])
    op.create_index("idx_bookings_passenger", "bookings", ["passenger_id"])
    op.create_index("idx_bookings_driver", "bookings", ["assigned_driver_id"])

    # ── dispatch_attempts ─────────────────────────────────────────────
    op.create_table(
        "dispatch_attempts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id", sa.Integer, sa.ForeignKey("bookings.id"), nullable=False
        ),
        sa.Column(
            "driver_id", sa.Integer, sa.ForeignKey("drivers.id"), nullable=False
        ),
        sa.Column("offered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "outcome",
            sa.Enum("ACCEPTED", "REJECTED", "EXPIRED", "REVOKED", name="attemptoutcome"),
            nullable=True,
        ),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_attempts_booking", "dispatch_attempts", ["booking_id"])
    op.create_index("idx_attempts_driver", "dispatch_attempts", ["driver_id"])
    op.create_index("idx_attempts_deadline", "dispatch_attempts", ["deadline"])

    # ── policies ──────────────────────────────────────────────────────
    op.create_table(
        "policies",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("version", sa.Integer, nullable=False, unique=True),
        sa.Column("data", sa.JSON, nullable=False),
        sa.Column("updated_by", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── disputes ──────────────────────────────────────────────────────
    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id",
            sa.Integer,
            sa.ForeignKey("bookings.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("passenger_id", sa.Integer, nullable=False),
        sa.Column("driver_id", sa.Integer, nullable=True),
        sa.Column("reason", sa.String(40), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("fee_under_dispute", sa.Float, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("disputes")
    op.drop_table("policies")
    op.drop_table("dispatch_attempts")
    op.drop_table("bookings")
    op.drop_table("drivers")
    op.execute("DROP TYPE IF EXISTS attemptoutcome")
    op.execute("DROP TYPE IF EXISTS paymentstatus")
    op.execute("DROP TYPE IF EXISTS bookingstatus")
    op.execute("DROP TYPE IF EXISTS driverstatus")
