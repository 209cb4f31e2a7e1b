"""Add the settlement-amount overload of pay_booking_with_points.

Revision ID: 002_pay_with_cash_check
Revises: 001_initial
Create Date: 2025-07-03

The new overload takes ``p_cash_paid`` and refuses to mark a booking paid when
the settled amount is below the cash due after points. The 8-argument
signature stays in place so callers deployed before this revision keep
working; they fall back to it when this overload is missing.
"""

from typing import Sequence

from alembic import op

# revision identifiers
revision: str = "002_pay_with_cash_check"
down_revision: str = "001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


PAY_BOOKING_WITH_POINTS_CASH = """
CREATE OR REPLACE FUNCTION pay_booking_with_points(
    p_booking_id uuid,
    p_sitter_id uuid,
    p_requested_points integer,
    p_service_fee_per_night numeric,
    p_cleaning_fee numeric,
    p_service_fee_total numeric,
    p_total_fee numeric,
    p_paid_at timestamptz,
    p_cash_paid numeric
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

    IF p_cash_paid IS NOT NULL AND round(p_cash_paid, 2) < round(v_cash_due, 2) THEN
        RETURN QUERY SELECT false, false, 0, v_cash_due;
        RETURN;
    END IF;

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
    op.execute(PAY_BOOKING_WITH_POINTS_CASH)


def downgrade() -> None:
    op.execute(
        "DROP FUNCTION IF EXISTS pay_booking_with_points("
        "uuid, uuid, integer, numeric, numeric, numeric, numeric, timestamptz, numeric)"
    )
