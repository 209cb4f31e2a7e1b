"""Booking fee calculation.

All amounts are dollars as ``Decimal``. A booking pins its rates at creation
time; later calculations must be fed the stored snapshot, never the current
platform defaults, so that repricing cannot change an existing booking.
"""

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
CENTS = Decimal("100")


@dataclass(frozen=True)
class FeeSummary:
    nights: int
    service_fee_per_night: Decimal
    cleaning_fee: Decimal
    insurance_cost: Decimal
    service_fee_total: Decimal
    total_fee: Decimal

    def cash_due(self, points: int) -> Decimal:
        """Cash left to pay after ``points`` nights are covered by points."""
        return max(self.total_fee - points * self.service_fee_per_night, ZERO)


def calculate_nights(start_date: date, end_date: date) -> int:
    """Whole calendar days between the dates, never less than one."""
    return max(1, (end_date - start_date).days)


def calculate_booking_fees(
    start_date: date,
    end_date: date,
    service_fee_per_night: Decimal,
    cleaning_fee: Decimal,
    insurance_cost: Decimal = ZERO,
) -> FeeSummary:
    nights = calculate_nights(start_date, end_date)
    per_night = Decimal(service_fee_per_night)
    cleaning = Decimal(cleaning_fee)
    insurance = Decimal(insurance_cost or ZERO)
    service_fee_total = per_night * nights
    return FeeSummary(
        nights=nights,
        service_fee_per_night=per_night,
        cleaning_fee=cleaning,
        insurance_cost=insurance,
        service_fee_total=service_fee_total,
        total_fee=service_fee_total + cleaning + insurance,
    )


def clamp_points(requested: int | None, balance: int, nights: int) -> int:
    """Bound a points spend to what the payer owns and what the stay is worth.

    One point covers one night of service fee, so a spend can never exceed
    ``nights`` points.
    """
    wanted = max(0, int(requested or 0))
    return min(wanted, max(0, min(balance, nights)))


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * CENTS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def snapshot_backfill(current: dict[str, Decimal | None], summary: FeeSummary, cash_due: Decimal) -> dict[str, Decimal]:
    """Values for snapshot fields that are still missing.

    Fields that already hold a value are left out so they are never rewritten.
    """
    computed = {
        "service_fee_per_night": summary.service_fee_per_night,
        "cleaning_fee": summary.cleaning_fee,
        "service_fee_total": summary.service_fee_total,
        "total_fee": summary.total_fee,
        "cash_due": cash_due,
    }
    return {field: value for field, value in computed.items() if current.get(field) is None}
