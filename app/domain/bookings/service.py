import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Literal

from app.domain.bookings import fees
from app.domain.bookings import state_machine as sm
from app.domain.bookings.db_models import Booking, Master, MasterService
from app.domain.bookings.repository import BookingFilters, BookingRepository, BookingSort
from app.domain.bookings.slots import Slot, SlotAvailabilityCalculator, WorkWindow
from app.domain.bookings.state_machine import BookingAction, BookingPermissions, BookingStatus, Party
from app.domain.errors import InvalidStateError, NotFoundError, ValidationError
from app.domain.identity import AuthContext, UserRole
from app.domain.notifications.service import NotificationType, Notifier
from app.domain.payments.service import PaymentResult, PaymentService
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

ONLINE_PAYMENT = "online"
PAYMENT_METHODS = {"on_meeting", "direct_transfer", "cash", "card_to_master", ONLINE_PAYMENT}
DEFAULT_SLOT_DURATION_MINUTES = 60

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_datetime(value: datetime, local_tz=None) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=local_tz or timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class BookingRequest:
    master_id: str
    service_id: str
    starts_at: datetime
    duration_minutes: int
    address: str | None = None
    notes: str | None = None
    payment_method: str = "on_meeting"


@dataclass
class ActionPayload:
    reason: str | None = None
    new_starts_at: datetime | None = None
    new_duration_minutes: int | None = None


@dataclass
class BookingOutcome:
    booking: Booking
    permissions: BookingPermissions
    warnings: list[str] = field(default_factory=list)
    cancellation_fee: Decimal | None = None
    refund_amount: Decimal | None = None
    price_difference: Decimal | None = None


@dataclass
class BookingListResult:
    items: list[tuple[Booking, BookingPermissions]]
    page: int
    limit: int
    total_count: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.limit) if self.limit else 0

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1


@dataclass
class SlotLookup:
    master: Master
    service: MasterService
    date: date
    duration_minutes: int
    slots: list[Slot]
    message: str | None = None


class BookingLifecycleOrchestrator:
    """Creates and drives instant bookings.

    Primary state changes are committed before payment and notification side
    effects run; those side effects never undo a transition and report
    problems through the outcome's warnings.
    """

    def __init__(
        self,
        repository: BookingRepository,
        payments: PaymentService,
        notifier: Notifier,
        *,
        app_settings=None,
        now: Clock = utc_now,
    ) -> None:
        self.repository = repository
        self.payments = payments
        self.notifier = notifier
        self.settings = app_settings or settings
        self._now = now

    @property
    def local_tz(self):
        return self.settings.local_tz

    async def create(self, request: BookingRequest, auth: AuthContext) -> BookingOutcome:
        now = self._now()
        starts_at = normalize_datetime(request.starts_at, self.local_tz)
        sm.validate_booking_time(starts_at, request.duration_minutes, now, self.local_tz)
        if request.payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {request.payment_method}")

        service = await self._require_service(request.service_id, request.master_id)
        master = await self.repository.get_master(request.master_id)
        if master is None:
            raise NotFoundError("Master not found", code="MASTER_NOT_FOUND")

        base = fees.to_money(service.base_price)
        urgent = fees.is_urgent(starts_at, now)
        total = fees.total_amount(base, urgent)
        auto_confirm = bool(service.auto_confirm and self.settings.auto_confirm_enabled)
        initial = sm.initial_fields(
            auto_confirm,
            now,
            timedelta(minutes=self.settings.pending_expiry_minutes),
        )
        booking = Booking(
            booking_id=str(uuid.uuid4()),
            client_id=auth.user_id,
            master_id=master.master_id,
            service_id=service.service_id,
            starts_at=starts_at,
            ends_at=starts_at + timedelta(minutes=request.duration_minutes),
            duration_minutes=request.duration_minutes,
            address=request.address,
            notes=request.notes,
            payment_method=request.payment_method,
            base_amount=base,
            urgent_fee=fees.urgent_fee(base) if urgent else fees.ZERO,
            platform_fee=fees.platform_fee(total),
            total_amount=total,
            urgent_booking=urgent,
            created_at=now,
            **initial,
        )
        booking = await self.repository.create_booking(booking)
        metrics.record_booking("created")
        logger.info(
            "booking_created",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "master_id": booking.master_id,
                    "status": booking.status,
                    "urgent": booking.urgent_booking,
                }
            },
        )

        warnings: list[str] = []
        if booking.status == BookingStatus.CONFIRMED.value and booking.payment_method == ONLINE_PAYMENT:
            await self._run_payment(warnings, "capture", booking, lambda: self.payments.capture(booking))
        await self._notify(warnings, booking.master_id, booking, NotificationType.NEW_BOOKING)
        client_notice = NotificationType.CONFIRMED if auto_confirm else NotificationType.NEW_BOOKING
        await self._notify(warnings, booking.client_id, booking, client_notice)
        return BookingOutcome(
            booking=booking,
            permissions=sm.permissions(booking, auth, now),
            warnings=warnings,
        )

    async def get(self, booking_id: str, auth: AuthContext) -> BookingOutcome:
        booking, _, now = await self._load(booking_id, auth)
        return BookingOutcome(booking=booking, permissions=sm.permissions(booking, auth, now))

    async def manage(
        self,
        booking_id: str,
        action: BookingAction | str,
        payload: ActionPayload,
        auth: AuthContext,
    ) -> BookingOutcome:
        try:
            action = BookingAction(action)
        except ValueError as exc:
            raise ValidationError(f"Invalid action: {action}", code="INVALID_ACTION") from exc

        booking, party, now = await self._load(booking_id, auth)

        if action == BookingAction.CONFIRM:
            outcome = await self._confirm(booking, auth, now)
        elif action == BookingAction.CANCEL:
            outcome = await self._cancel(booking, auth, now, payload.reason)
        elif action == BookingAction.RESCHEDULE:
            outcome = await self._reschedule(
                booking, auth, now, payload.new_starts_at, payload.new_duration_minutes
            )
        elif action == BookingAction.START:
            outcome = await self._start(booking, auth, now)
        else:
            outcome = await self._complete(booking, auth, now)

        metrics.record_booking(action.value)
        logger.info(
            "booking_action_applied",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "action": action.value,
                    "actor": party.value,
                    "status": outcome.booking.status,
                }
            },
        )
        notification = ACTION_NOTIFICATIONS[action]
        for user_id in _recipients(outcome.booking, party):
            await self._notify(outcome.warnings, user_id, outcome.booking, notification)
        outcome.permissions = sm.permissions(outcome.booking, auth, now)
        return outcome

    async def list_bookings(
        self,
        auth: AuthContext,
        *,
        role: Literal["client", "master"] | None = None,
        filters: BookingFilters | None = None,
        sort: BookingSort | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> BookingListResult:
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")
        if role is None:
            role = "master" if auth.role == UserRole.MASTER else "client"
        result = await self.repository.list_user_bookings(
            auth.user_id,
            role,
            filters or BookingFilters(),
            sort or BookingSort(),
            page,
            limit,
        )
        now = self._now()
        items = []
        for booking in result.items:
            if sm.is_expired(booking, now):
                booking = await self._expire(booking, now)
            items.append((booking, sm.permissions(booking, auth, now)))
        return BookingListResult(items=items, page=page, limit=limit, total_count=result.total_count)

    async def available_slots(
        self,
        master_id: str,
        service_id: str,
        target_date: date,
        duration_minutes: int | None = None,
    ) -> SlotLookup:
        duration = duration_minutes or DEFAULT_SLOT_DURATION_MINUTES
        sm.validate_duration(duration)
        service = await self._require_service(service_id, master_id)
        master = await self.repository.get_master(master_id)
        if master is None:
            raise NotFoundError("Master not found", code="MASTER_NOT_FOUND")

        hours = await self.repository.get_master_availability(master_id, target_date.weekday())
        if not hours:
            return SlotLookup(
                master=master,
                service=service,
                date=target_date,
                duration_minutes=duration,
                slots=[],
                message="Master is not available on this day",
            )

        day_start = datetime.combine(target_date, time.min, tzinfo=self.local_tz)
        day_end = day_start + timedelta(days=1)
        occupied = await self.repository.query_master_bookings_in_range(
            master_id,
            day_start.astimezone(timezone.utc),
            day_end.astimezone(timezone.utc),
        )
        calculator = SlotAvailabilityCalculator(
            target_date,
            [WorkWindow(start_time=item.start_time, end_time=item.end_time) for item in hours],
            duration,
            occupied,
            service.base_price,
            self._now(),
            self.local_tz,
        )
        slots = list(calculator)
        return SlotLookup(
            master=master,
            service=service,
            date=target_date,
            duration_minutes=duration,
            slots=slots,
            message=None if slots else "No available slots for this day",
        )

    async def _confirm(self, booking: Booking, auth: AuthContext, now: datetime) -> BookingOutcome:
        patch = sm.confirm(booking, auth, now)
        updated = await self.repository.update_booking(booking.booking_id, patch, BookingStatus.PENDING.value)
        warnings: list[str] = []
        if updated.payment_method == ONLINE_PAYMENT:
            await self._run_payment(warnings, "capture", updated, lambda: self.payments.capture(updated))
        return BookingOutcome(booking=updated, permissions=sm.permissions(updated, auth, now), warnings=warnings)

    async def _cancel(
        self,
        booking: Booking,
        auth: AuthContext,
        now: datetime,
        reason: str | None,
    ) -> BookingOutcome:
        patch, charge = sm.cancel(booking, auth, now, reason)
        updated = await self.repository.update_booking(booking.booking_id, patch, booking.status)
        warnings: list[str] = []
        if charge.refund > 0 and await self._has_captured_payment(updated):
            await self._run_payment(
                warnings,
                "refund",
                updated,
                lambda: self.payments.refund(updated, charge.refund),
            )
        return BookingOutcome(
            booking=updated,
            permissions=sm.permissions(updated, auth, now),
            warnings=warnings,
            cancellation_fee=charge.fee,
            refund_amount=charge.refund,
        )

    async def _reschedule(
        self,
        booking: Booking,
        auth: AuthContext,
        now: datetime,
        new_starts_at: datetime | None,
        new_duration_minutes: int | None = None,
    ) -> BookingOutcome:
        if new_starts_at is None:
            raise ValidationError("new_starts_at is required to reschedule", code="INVALID_TIME")
        target = normalize_datetime(new_starts_at, self.local_tz)
        patch, delta = sm.reschedule(booking, auth, target, now, self.local_tz, new_duration_minutes)
        updated = await self.repository.update_booking(booking.booking_id, patch, booking.status)
        warnings: list[str] = []
        if delta.delta != 0 and await self._has_captured_payment(updated):
            if delta.delta > 0:
                await self._run_payment(
                    warnings,
                    "additional_charge",
                    updated,
                    lambda: self.payments.additional_charge(updated, delta.delta),
                )
            else:
                await self._run_payment(
                    warnings,
                    "partial_refund",
                    updated,
                    lambda: self.payments.partial_refund(updated, -delta.delta),
                )
        return BookingOutcome(
            booking=updated,
            permissions=sm.permissions(updated, auth, now),
            warnings=warnings,
            price_difference=delta.delta,
        )

    async def _start(self, booking: Booking, auth: AuthContext, now: datetime) -> BookingOutcome:
        patch = sm.start(booking, auth, now)
        updated = await self.repository.update_booking(booking.booking_id, patch, BookingStatus.CONFIRMED.value)
        return BookingOutcome(booking=updated, permissions=sm.permissions(updated, auth, now))

    async def _complete(self, booking: Booking, auth: AuthContext, now: datetime) -> BookingOutcome:
        patch = sm.complete(booking, auth, now)
        updated = await self.repository.update_booking(
            booking.booking_id, patch, BookingStatus.IN_PROGRESS.value
        )
        warnings: list[str] = []
        await self._run_payment(warnings, "payout", updated, lambda: self.payments.payout(updated))
        return BookingOutcome(booking=updated, permissions=sm.permissions(updated, auth, now), warnings=warnings)

    async def _require_service(self, service_id: str, master_id: str) -> MasterService:
        service = await self.repository.get_service_info(service_id, master_id)
        if service is None or not service.is_active or not service.instant_booking_enabled:
            raise NotFoundError(
                "Service not found or instant booking not available",
                code="SERVICE_NOT_FOUND",
            )
        return service

    async def _load(self, booking_id: str, auth: AuthContext) -> tuple[Booking, Party, datetime]:
        booking = await self.repository.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", code="BOOKING_NOT_FOUND")
        # outsiders are rejected before lazy expiry is written
        party = sm.require_party(booking, auth)
        now = self._now()
        if sm.is_expired(booking, now):
            booking = await self._expire(booking, now)
        return booking, party, now

    async def _expire(self, booking: Booking, now: datetime) -> Booking:
        booking_id = booking.booking_id
        try:
            expired = await self.repository.update_booking(
                booking_id,
                sm.expire(booking, now),
                BookingStatus.PENDING.value,
            )
        except InvalidStateError:
            # another request moved the booking first
            current = await self.repository.get_booking(booking_id)
            if current is None:
                raise NotFoundError("Booking not found", code="BOOKING_NOT_FOUND")
            return current
        metrics.record_booking("expired")
        logger.info("booking_expired", extra={"extra": {"booking_id": booking_id}})
        return expired

    async def _has_captured_payment(self, booking: Booking) -> bool:
        if booking.payment_method != ONLINE_PAYMENT:
            return False
        try:
            return await self.payments.captured_payment(booking.booking_id) is not None
        except Exception:  # noqa: BLE001
            logger.exception(
                "payment_lookup_failed",
                extra={"extra": {"booking_id": booking.booking_id}},
            )
            return False

    async def _run_payment(
        self,
        warnings: list[str],
        operation: str,
        booking: Booking,
        call: Callable[[], Awaitable[PaymentResult]],
    ) -> None:
        try:
            result = await call()
        except Exception:  # noqa: BLE001
            logger.exception(
                "payment_side_effect_error",
                extra={"extra": {"booking_id": booking.booking_id, "operation": operation}},
            )
            warnings.append(f"payment_{operation}_failed")
            return
        if not result.success:
            logger.warning(
                f"payment_{operation}_failed",
                extra={"extra": {"booking_id": booking.booking_id, "error": result.error}},
            )
            warnings.append(f"payment_{operation}_failed")

    async def _notify(
        self,
        warnings: list[str],
        user_id: str,
        booking: Booking,
        notification_type: NotificationType,
    ) -> None:
        try:
            delivered = await self.notifier.notify(user_id, booking, notification_type)
        except Exception:  # noqa: BLE001
            logger.exception(
                "notification_dispatch_error",
                extra={"extra": {"booking_id": booking.booking_id, "type": notification_type.value}},
            )
            delivered = False
        if not delivered:
            warnings.append(f"notification_{notification_type.value.lower()}_failed")


ACTION_NOTIFICATIONS: dict[BookingAction, NotificationType] = {
    BookingAction.CONFIRM: NotificationType.CONFIRMED,
    BookingAction.CANCEL: NotificationType.CANCELLED,
    BookingAction.RESCHEDULE: NotificationType.RESCHEDULED,
    BookingAction.START: NotificationType.STARTED,
    BookingAction.COMPLETE: NotificationType.COMPLETED,
}


def _recipients(booking: Booking, party: Party) -> list[str]:
    if party == Party.CLIENT:
        return [booking.master_id]
    if party == Party.MASTER:
        return [booking.client_id]
    return [booking.client_id, booking.master_id]
