"""Payment state machine.

Payment status is orthogonal to booking status and only ever moves forward:
unpaid -> paid -> refunded.
"""

from enum import Enum


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    REFUNDED = "refunded"


PAYMENT_TRANSITIONS = {
    PaymentStatus.UNPAID: {PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}


def parse_payment_status(value: str | None) -> PaymentStatus:
    """Legacy rows may carry NULL, which means unpaid."""
    return PaymentStatus(value) if value else PaymentStatus.UNPAID


def patch_sources(target: PaymentStatus) -> set[PaymentStatus]:
    """Stored statuses a processor-driven status patch may overwrite.

    ``unpaid`` is only written over ``unpaid`` (normalising legacy NULLs); it
    never downgrades a paid or refunded booking.
    """
    if target is PaymentStatus.UNPAID:
        return {PaymentStatus.UNPAID}
    return {source for source, targets in PAYMENT_TRANSITIONS.items() if target in targets}
