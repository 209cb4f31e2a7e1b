"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2025-05-12

Creates the booking core:
- Profiles and listings (read-only mirrors of the identity/listing services)
- Bookings and availability, with the overlap exclusion constraint
- Points ledger
- Conversations and notifications
- Stripe webhook dedupe table and the side-effect outbox
- pay_booking_with_points(...) atomic payment function
"""

from typing import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


PAY_BOOKING_WITH_POINTS = """
CREATE OR REPLACE FUNCTION pay_booking_with_points(
    p_booking_id uuid,
    p_sitter_id uuid,
    p_requested_points integer,
    p_service_fee_per_night numeric,
    p_cleaning_fee numeric,
    p_service_fee_total numeric,
    p_total_fee numeric,
    p_paid_at timestamptz
)
RETURNS TABLE (updated boolean, already_paid boolean, points_applied integer, cash_due numeric)
LANGUAGE plpgsql
AS $$
#variable_conflict use_column
DECLARE
    v_booking bookings%ROWTYPE;
    v_balance integer;
    v_nights integer;
    v_points integer;
    v_cash_due numeric;
BEGIN
    SELECT * INTO v_booking FROM bookings WHERE id = p_booking_id FOR UPDATE;
    IF NOT FOUND OR v_booking.sitter_id <> p_sitter_id THEN
        RETURN QUERY SELECT false, false, 0, 0::numeric;
        RETURN;
    END IF;

    IF v_booking.payment_status = 'paid' THEN
        RETURN QUERY SELECT false, true, v_booking.points_applied, coalesce(v_booking.cash_due, 0);
        RETURN;
    END IF;

    IF v_booking.status NOT IN ('confirmed', 'accepted')
       OR coalesce(v_booking.payment_status, 'unpaid') <> 'unpaid' THEN
        RETURN QUERY SELECT false, false, 0, 0::numeric;
        RETURN;
    END IF;

    -- serialise spends of the same balance
    PERFORM 1 FROM profiles WHERE id = p_sitter_id FOR UPDATE;

    SELECT greatest(coalesce(sum(points_delta), 0), 0) INTO v_balance
    FROM points_ledger WHERE user_id = p_sitter_id;

    v_nights := greatest(1, v_booking.end_date - v_booking.start_date);
    v_points := least(greatest(coalesce(p_requested_points, 0), 0), least(v_balance, v_nights));
    v_cash_due := greatest(p_total_fee - v_points * p_service_fee_per_night, 0);

    UPDATE bookings SET
        payment_status = 'paid',
        paid_at = p_paid_at,
        points_applied = v_points,
        cash_due = v_cash_due,
        service_fee_per_night = coalesce(service_fee_per_night, p_service_fee_per_night),
        cleaning_fee = coalesce(cleaning_fee, p_cleaning_fee),
        service_fee_total = coalesce(service_fee_total, p_service_fee_total),
        total_fee = coalesce(total_fee, p_total_fee),
        updated_at = now()
    WHERE id = p_booking_id;

    IF v_points > 0 THEN
        INSERT INTO points_ledger (id, user_id, booking_id, points_delta, reason)
        VALUES (gen_random_uuid(), p_sitter_id, p_booking_id, -v_points, 'spend');
    END IF;

    RETURN QUERY SELECT true, false, v_points, v_cash_due;
END;
$$;
"""


def upgrade() -> None:
    """Create all database tables."""
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    # ==================== PROFILES & LISTINGS ====================
    op.create_table(
        "profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("full_name", sa.String(255)),
        sa.Column("email", sa.String(255), index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "listings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("profiles.id"), nullable=False, index=True),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ==================== AVAILABILITY ====================
    op.create_table(
        "availability",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("listing_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("start_date", sa.Date, nullable=False, index=True),
        sa.Column("end_date", sa.Date, nullable=False, index=True),
        sa.Column("is_booked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ==================== BOOKINGS ====================
    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("listing_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("listings.id"), nullable=False, index=True),
        sa.Column("sitter_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("profiles.id"), nullable=False, index=True),
        sa.Column("requested_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("profiles.id")),
        sa.Column("match_id", postgresql.UUID(as_uuid=True)),
        sa.Column("start_date", sa.Date, nullable=False, index=True),
        sa.Column("end_date", sa.Date, nullable=False, index=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("payment_status", sa.String(20), server_default="unpaid"),
        sa.Column("stripe_payment_intent_id", sa.String(255), index=True),
        sa.Column("payment_method", sa.String(20)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("service_fee_per_night", sa.Numeric(10, 2)),
        sa.Column("cleaning_fee", sa.Numeric(10, 2)),
        sa.Column("service_fee_total", sa.Numeric(10, 2)),
        sa.Column("total_fee", sa.Numeric(10, 2)),
        sa.Column("cash_due", sa.Numeric(10, 2)),
        sa.Column("points_applied", sa.Integer, nullable=False, server_default="0"),
        sa.Column("points_awarded", sa.Integer, nullable=False, server_default="0"),
        sa.Column("insurance_selected", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("insurance_plan_type", sa.String(50)),
        sa.Column("insurance_cost", sa.Numeric(10, 2)),
        sa.Column("cancelled_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("profiles.id")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("start_date < end_date", name="bookings_start_before_end"),
    )
    op.execute(
        """
        ALTER TABLE bookings ADD CONSTRAINT bookings_no_overlap_active
        EXCLUDE USING gist (
            listing_id WITH =,
            daterange(start_date, end_date, '[]') WITH &&
        ) WHERE (status IN ('pending', 'accepted', 'confirmed'))
        """
    )

    # ==================== POINTS ====================
    op.create_table(
        "points_ledger",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("profiles.id"), nullable=False, index=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id"), index=True),
        sa.Column("points_delta", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("booking_id", "user_id", "reason", name="uq_points_ledger_booking_reason"),
    )

    # ==================== MESSAGES ====================
    op.create_table(
        "conversations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("listing_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("listings.id"), nullable=False, index=True),
        sa.Column("match_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("participant1_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("participant2_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("data", postgresql.JSONB),
        sa.Column("is_read", sa.Boolean, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ==================== WEBHOOKS & OUTBOX ====================
    op.create_table(
        "stripe_webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "outbox_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("aggregate_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("effect", sa.String(50), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.execute(PAY_BOOKING_WITH_POINTS)


def downgrade() -> None:
    """Drop all database objects in reverse order."""
    op.execute(
        "DROP FUNCTION IF EXISTS pay_booking_with_points("
        "uuid, uuid, integer, numeric, numeric, numeric, numeric, timestamptz)"
    )
    op.drop_table("outbox_events")
    op.drop_table("stripe_webhook_events")
    op.drop_table("notifications")
    op.drop_table("conversations")
    op.drop_table("points_ledger")
    op.drop_table("bookings")
    op.drop_table("availability")
    op.drop_table("listings")
    op.drop_table("profiles")
