from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from app.domain.bookings import fees
from app.domain.errors import ExpiredError, InvalidStateError, PermissionDeniedError, ValidationError
from app.domain.identity import AuthContext

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 480
MIN_LEAD = timedelta(minutes=15)
MAX_ADVANCE = timedelta(days=30)
BUSINESS_DAY_START = time(hour=6)
BUSINESS_DAY_END = time(hour=23)
START_TOLERANCE = timedelta(minutes=15)
RESCHEDULE_CUTOFF = timedelta(hours=2)


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class BookingAction(str, Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"
    START = "start"
    COMPLETE = "complete"


class Party(str, Enum):
    CLIENT = "client"
    MASTER = "master"
    ADMIN = "admin"


ACTIVE_STATUSES = frozenset({BookingStatus.CONFIRMED.value, BookingStatus.IN_PROGRESS.value})
TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value, BookingStatus.EXPIRED.value}
)

BOOKING_TRANSITIONS: dict[str, set[str]] = {
    BookingStatus.PENDING.value: {
        BookingStatus.CONFIRMED.value,
        BookingStatus.CANCELLED.value,
        BookingStatus.EXPIRED.value,
    },
    BookingStatus.CONFIRMED.value: {
        BookingStatus.IN_PROGRESS.value,
        BookingStatus.CANCELLED.value,
        BookingStatus.CONFIRMED.value,
    },
    BookingStatus.IN_PROGRESS.value: {BookingStatus.COMPLETED.value},
    BookingStatus.COMPLETED.value: set(),
    BookingStatus.CANCELLED.value: set(),
    BookingStatus.EXPIRED.value: set(),
}


@dataclass(frozen=True)
class ActionRule:
    allowed_from: frozenset[str]
    actors: frozenset[Party]
    target: str | None


ACTION_RULES: dict[BookingAction, ActionRule] = {
    BookingAction.CONFIRM: ActionRule(
        allowed_from=frozenset({BookingStatus.PENDING.value}),
        actors=frozenset({Party.MASTER, Party.ADMIN}),
        target=BookingStatus.CONFIRMED.value,
    ),
    BookingAction.CANCEL: ActionRule(
        allowed_from=frozenset({BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value}),
        actors=frozenset({Party.CLIENT, Party.MASTER, Party.ADMIN}),
        target=BookingStatus.CANCELLED.value,
    ),
    BookingAction.RESCHEDULE: ActionRule(
        allowed_from=frozenset({BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value}),
        actors=frozenset({Party.CLIENT, Party.MASTER, Party.ADMIN}),
        target=None,
    ),
    BookingAction.START: ActionRule(
        allowed_from=frozenset({BookingStatus.CONFIRMED.value}),
        actors=frozenset({Party.MASTER, Party.ADMIN}),
        target=BookingStatus.IN_PROGRESS.value,
    ),
    BookingAction.COMPLETE: ActionRule(
        allowed_from=frozenset({BookingStatus.IN_PROGRESS.value}),
        actors=frozenset({Party.MASTER, Party.ADMIN}),
        target=BookingStatus.COMPLETED.value,
    ),
}

EXPIRE = "expire"

# Fields each transition is allowed to write.
PATCHABLE_FIELDS: dict[str, frozenset[str]] = {
    EXPIRE: frozenset({"status", "expired_at"}),
    BookingAction.CONFIRM.value: frozenset({"status", "confirmed_at", "expires_at"}),
    BookingAction.CANCEL.value: frozenset(
        {
            "status",
            "cancelled_at",
            "cancelled_by",
            "cancellation_reason",
            "cancellation_fee",
            "refund_amount",
            "expires_at",
        }
    ),
    BookingAction.RESCHEDULE.value: frozenset(
        {
            "starts_at",
            "duration_minutes",
            "ends_at",
            "urgent_booking",
            "urgent_fee",
            "total_amount",
            "platform_fee",
            "rescheduled_at",
            "rescheduled_by",
        }
    ),
    BookingAction.START.value: frozenset({"status", "started_at"}),
    BookingAction.COMPLETE.value: frozenset({"status", "completed_at"}),
}


class BookingLike(Protocol):
    booking_id: str
    client_id: str
    master_id: str
    status: str
    starts_at: datetime
    ends_at: datetime
    duration_minutes: int
    base_amount: Decimal
    urgent_fee: Decimal
    total_amount: Decimal
    urgent_booking: bool
    expires_at: datetime | None


@dataclass(frozen=True)
class BookingPatch:
    """Typed partial update produced by a single transition."""

    transition: str
    values: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        allowed = PATCHABLE_FIELDS.get(self.transition)
        if allowed is None:
            raise ValueError(f"Unknown booking transition: {self.transition}")
        unexpected = set(self.values) - allowed
        if unexpected:
            raise ValueError(
                f"Transition {self.transition} may not change: {', '.join(sorted(unexpected))}"
            )

    @property
    def status(self) -> str | None:
        status = self.values.get("status")
        if isinstance(status, BookingStatus):
            return status.value
        return status


@dataclass(frozen=True)
class BookingPermissions:
    can_cancel: bool
    can_reschedule: bool
    can_start: bool
    can_complete: bool


def assert_valid_booking_transition(current: str, target: str) -> None:
    allowed = BOOKING_TRANSITIONS.get(current)
    if allowed is None:
        raise InvalidStateError(f"Unknown booking status: {current}")
    if not allowed:
        raise InvalidStateError(f"Booking is already in terminal status: {current}")
    if target not in allowed:
        raise InvalidStateError(f"Cannot transition booking from {current} to {target}")


def resolve_party(booking: BookingLike, auth: AuthContext) -> Party | None:
    if auth.is_admin:
        return Party.ADMIN
    if auth.user_id == booking.master_id:
        return Party.MASTER
    if auth.user_id == booking.client_id:
        return Party.CLIENT
    return None


def require_party(booking: BookingLike, auth: AuthContext) -> Party:
    party = resolve_party(booking, auth)
    if party is None:
        raise PermissionDeniedError("You do not have access to this booking")
    return party


def authorize(action: BookingAction, booking: BookingLike, auth: AuthContext) -> Party:
    """Party first, then the booking's state, then whether this party may act."""
    party = require_party(booking, auth)
    ensure_state(action, booking)
    rule = ACTION_RULES[action]
    if party not in rule.actors:
        raise PermissionDeniedError(f"A {party.value} cannot {action.value} this booking")
    return party


def ensure_state(action: BookingAction, booking: BookingLike) -> None:
    rule = ACTION_RULES[action]
    if booking.status not in rule.allowed_from:
        raise InvalidStateError(f"Cannot {action.value} a booking with status {booking.status}")
    if rule.target is not None:
        assert_valid_booking_transition(booking.status, rule.target)


def validate_duration(duration_minutes: int) -> None:
    if not MIN_DURATION_MINUTES <= duration_minutes <= MAX_DURATION_MINUTES:
        raise ValidationError(
            f"Duration must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES} minutes",
            code="INVALID_DURATION",
        )


def validate_booking_time(
    starts_at: datetime,
    duration_minutes: int,
    now: datetime,
    local_tz: ZoneInfo,
) -> None:
    """Reject starts in the past, too soon, too far ahead or outside business hours."""
    validate_duration(duration_minutes)
    if starts_at <= now:
        raise ValidationError("Cannot book in the past", code="INVALID_TIME")
    if starts_at - now < MIN_LEAD:
        raise ValidationError("Booking must be at least 15 minutes in advance", code="INVALID_TIME")
    if starts_at - now > MAX_ADVANCE:
        raise ValidationError("Cannot book more than 30 days in advance", code="INVALID_TIME")

    local_start = starts_at.astimezone(local_tz)
    local_end = (starts_at + timedelta(minutes=duration_minutes)).astimezone(local_tz)
    day_end = datetime.combine(local_start.date(), BUSINESS_DAY_END, tzinfo=local_tz)
    if local_start.time() < BUSINESS_DAY_START or local_end > day_end:
        raise ValidationError(
            "Booking time must be between 6:00 AM and 11:00 PM",
            code="INVALID_TIME",
        )


def initial_fields(auto_confirm: bool, now: datetime, pending_expiry: timedelta) -> dict[str, Any]:
    if auto_confirm:
        return {
            "status": BookingStatus.CONFIRMED.value,
            "auto_confirmed": True,
            "confirmed_at": now,
            "expires_at": None,
        }
    return {
        "status": BookingStatus.PENDING.value,
        "auto_confirmed": False,
        "confirmed_at": None,
        "expires_at": now + pending_expiry,
    }


def is_expired(booking: BookingLike, now: datetime) -> bool:
    return (
        booking.status == BookingStatus.PENDING.value
        and booking.expires_at is not None
        and now > booking.expires_at
    )


def expire(booking: BookingLike, now: datetime) -> BookingPatch:
    assert_valid_booking_transition(booking.status, BookingStatus.EXPIRED.value)
    return BookingPatch(EXPIRE, {"status": BookingStatus.EXPIRED.value, "expired_at": now})


def confirm(booking: BookingLike, auth: AuthContext, now: datetime) -> BookingPatch:
    require_party(booking, auth)
    if booking.status == BookingStatus.EXPIRED.value or is_expired(booking, now):
        raise ExpiredError("Booking has expired")
    authorize(BookingAction.CONFIRM, booking, auth)
    return BookingPatch(
        BookingAction.CONFIRM.value,
        {"status": BookingStatus.CONFIRMED.value, "confirmed_at": now, "expires_at": None},
    )


def cancel(
    booking: BookingLike,
    auth: AuthContext,
    now: datetime,
    reason: str | None = None,
) -> tuple[BookingPatch, fees.CancellationCharge]:
    authorize(BookingAction.CANCEL, booking, auth)
    charge = fees.cancellation_fee(booking.total_amount, booking.starts_at, booking.status, now)
    patch = BookingPatch(
        BookingAction.CANCEL.value,
        {
            "status": BookingStatus.CANCELLED.value,
            "cancelled_at": now,
            "cancelled_by": auth.user_id,
            "cancellation_reason": reason,
            "cancellation_fee": charge.fee,
            "refund_amount": charge.refund,
            "expires_at": None,
        },
    )
    return patch, charge


def reschedule(
    booking: BookingLike,
    auth: AuthContext,
    new_starts_at: datetime,
    now: datetime,
    local_tz: ZoneInfo,
    new_duration_minutes: int | None = None,
) -> tuple[BookingPatch, fees.RescheduleDelta]:
    authorize(BookingAction.RESCHEDULE, booking, auth)
    duration = booking.duration_minutes if new_duration_minutes is None else new_duration_minutes
    validate_booking_time(new_starts_at, duration, now, local_tz)

    new_urgent = fees.is_urgent(new_starts_at, now)
    delta = fees.reschedule_delta(
        booking.urgent_booking,
        new_urgent,
        booking.base_amount,
        booking.urgent_fee,
    )
    new_total = fees.to_money(fees.to_money(booking.total_amount) + delta.delta)
    patch = BookingPatch(
        BookingAction.RESCHEDULE.value,
        {
            "starts_at": new_starts_at,
            "ends_at": new_starts_at + timedelta(minutes=duration),
            "duration_minutes": duration,
            "urgent_booking": new_urgent,
            "urgent_fee": delta.urgent_fee,
            "total_amount": new_total,
            "platform_fee": fees.platform_fee(new_total),
            "rescheduled_at": now,
            "rescheduled_by": auth.user_id,
        },
    )
    return patch, delta


def start(booking: BookingLike, auth: AuthContext, now: datetime) -> BookingPatch:
    authorize(BookingAction.START, booking, auth)
    if abs(now - booking.starts_at) > START_TOLERANCE:
        raise ValidationError(
            "Booking can only be started within 15 minutes of its scheduled time",
            code="INVALID_TIME",
        )
    return BookingPatch(
        BookingAction.START.value,
        {"status": BookingStatus.IN_PROGRESS.value, "started_at": now},
    )


def complete(booking: BookingLike, auth: AuthContext, now: datetime) -> BookingPatch:
    authorize(BookingAction.COMPLETE, booking, auth)
    return BookingPatch(
        BookingAction.COMPLETE.value,
        {"status": BookingStatus.COMPLETED.value, "completed_at": now},
    )


def permissions(booking: BookingLike, auth: AuthContext, now: datetime) -> BookingPermissions:
    party = resolve_party(booking, auth)
    if party is None:
        return BookingPermissions(False, False, False, False)
    lead = booking.starts_at - now
    cancellable = booking.status in ACTION_RULES[BookingAction.CANCEL].allowed_from
    operator = party in (Party.MASTER, Party.ADMIN)
    return BookingPermissions(
        can_cancel=cancellable and lead > timedelta(0),
        can_reschedule=cancellable and lead > RESCHEDULE_CUTOFF,
        can_start=(
            operator
            and booking.status == BookingStatus.CONFIRMED.value
            and abs(lead) <= START_TOLERANCE
        ),
        can_complete=operator and booking.status == BookingStatus.IN_PROGRESS.value,
    )
