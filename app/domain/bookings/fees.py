from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
URGENT_WINDOW = timedelta(hours=2)
URGENT_FEE_RATE = Decimal("0.25")
PLATFORM_FEE_RATE = Decimal("0.05")
LATE_CANCELLATION_WINDOW = timedelta(hours=2)
SHORT_NOTICE_CANCELLATION_WINDOW = timedelta(hours=24)
LATE_CANCELLATION_RATE = Decimal("0.5")
SHORT_NOTICE_CANCELLATION_RATE = Decimal("0.25")

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class CancellationCharge:
    fee: Decimal
    refund: Decimal


@dataclass(frozen=True)
class RescheduleDelta:
    urgent_fee: Decimal
    delta: Decimal


def to_money(value: Decimal | int | float | str) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def is_urgent(starts_at: datetime, now: datetime) -> bool:
    return starts_at - now < URGENT_WINDOW


def urgent_fee(base: Decimal) -> Decimal:
    return to_money(to_money(base) * URGENT_FEE_RATE)


def platform_fee(total: Decimal) -> Decimal:
    return to_money(to_money(total) * PLATFORM_FEE_RATE)


def total_amount(base: Decimal, urgent: bool) -> Decimal:
    surcharge = urgent_fee(base) if urgent else ZERO
    return to_money(to_money(base) + surcharge)


def cancellation_fee(total: Decimal, starts_at: datetime, status: str, now: datetime) -> CancellationCharge:
    """Fee kept by the platform when a booking is cancelled.

    Bookings that were never confirmed are refunded in full. For confirmed
    bookings the fee grows as the start approaches: half the total inside two
    hours, a quarter inside a day, nothing beyond that. A negative lead (the
    start already passed) falls in the steepest tier.
    """
    total = to_money(total)
    if status != "CONFIRMED":
        return CancellationCharge(fee=ZERO, refund=total)

    lead = starts_at - now
    if lead < LATE_CANCELLATION_WINDOW:
        fee = to_money(total * LATE_CANCELLATION_RATE)
    elif lead < SHORT_NOTICE_CANCELLATION_WINDOW:
        fee = to_money(total * SHORT_NOTICE_CANCELLATION_RATE)
    else:
        fee = ZERO
    return CancellationCharge(fee=fee, refund=to_money(total - fee))


def reschedule_delta(
    old_urgent: bool,
    new_urgent: bool,
    base: Decimal,
    old_urgent_fee: Decimal,
) -> RescheduleDelta:
    """Urgent fee after a reschedule and the amount owed (positive) or refunded (negative).

    A booking that stays urgent has its surcharge recomputed from the current
    base but is neither charged nor refunded again.
    """
    old_urgent_fee = to_money(old_urgent_fee)
    if new_urgent and not old_urgent:
        fee = urgent_fee(base)
        return RescheduleDelta(urgent_fee=fee, delta=fee)
    if old_urgent and not new_urgent:
        return RescheduleDelta(urgent_fee=ZERO, delta=-old_urgent_fee)
    if old_urgent and new_urgent:
        return RescheduleDelta(urgent_fee=urgent_fee(base), delta=ZERO)
    return RescheduleDelta(urgent_fee=ZERO, delta=ZERO)
