from datetime import timedelta
from decimal import Decimal

import anyio
import pytest
from sqlalchemy import select

from app.domain.bookings.repository import BookingFilters, BookingSort
from app.domain.bookings.service import ActionPayload, BookingRequest
from app.domain.errors import ConflictError, ExpiredError, InvalidStateError, NotFoundError, PermissionDeniedError, ValidationError
from app.domain.payments.db_models import Transaction
from app.settings import settings
from tests.conftest import (
    ADMIN,
    AUTO_SERVICE_ID,
    CLIENT,
    CLIENT_ID,
    INACTIVE_SERVICE_ID,
    MASTER,
    MASTER_ID,
    OTHER_CLIENT,
    OTHER_MASTER_ID,
    OTHER_SERVICE_ID,
    SERVICE_ID,
    FailingGateway,
    local_dt,
)


def _request(starts_at, service_id=AUTO_SERVICE_ID, **kwargs) -> BookingRequest:
    return BookingRequest(
        master_id=kwargs.pop("master_id", MASTER_ID),
        service_id=service_id,
        starts_at=starts_at,
        duration_minutes=kwargs.pop("duration_minutes", 60),
        **kwargs,
    )


async def _transactions(session, booking_id: str) -> list[tuple[str, Decimal, str]]:
    result = await session.execute(select(Transaction).where(Transaction.booking_id == booking_id))
    return sorted((item.type, item.amount, item.status) for item in result.scalars().all())


@pytest.mark.anyio
async def test_book_conflict_then_cancel_with_full_refund(async_session_maker, build_orchestrator, notifier):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)

        created = await orchestrator.create(_request(local_dt(3, 10)), CLIENT)
        booking = created.booking
        booking_id = booking.booking_id
        assert booking.status == "CONFIRMED"
        assert booking.auto_confirmed
        assert not booking.urgent_booking
        assert booking.total_amount == Decimal("1000.00")
        assert booking.urgent_fee == Decimal("0.00")
        assert booking.platform_fee == Decimal("50.00")
        assert booking.ends_at == local_dt(3, 11)
        assert created.warnings == []

        with pytest.raises(ConflictError):
            await orchestrator.create(_request(local_dt(3, 10, 30)), OTHER_CLIENT)

        cancelled = await orchestrator.manage(
            booking_id, "cancel", ActionPayload(reason="Plans changed"), CLIENT
        )
        assert cancelled.booking.status == "CANCELLED"
        assert cancelled.cancellation_fee == Decimal("0.00")
        assert cancelled.refund_amount == Decimal("1000.00")
        assert cancelled.booking.cancelled_by == CLIENT_ID
        assert cancelled.booking.cancellation_reason == "Plans changed"

        retry = await orchestrator.create(_request(local_dt(3, 10, 30)), OTHER_CLIENT)
        assert retry.booking.status == "CONFIRMED"

    assert (MASTER_ID, booking_id, "NEW_BOOKING") in notifier.sent
    assert (CLIENT_ID, booking_id, "CONFIRMED") in notifier.sent
    assert (MASTER_ID, booking_id, "CANCELLED") in notifier.sent


@pytest.mark.anyio
async def test_urgent_booking_is_priced_with_surcharge(async_session_maker, build_orchestrator, clock):
    clock.now = local_dt(2, 9)
    async with async_session_maker() as session:
        outcome = await build_orchestrator(session).create(_request(local_dt(2, 10)), CLIENT)

    assert outcome.booking.urgent_booking
    assert outcome.booking.urgent_fee == Decimal("250.00")
    assert outcome.booking.total_amount == Decimal("1250.00")
    assert outcome.booking.platform_fee == Decimal("62.50")


@pytest.mark.anyio
async def test_manual_service_creates_pending_booking(async_session_maker, build_orchestrator, clock, notifier):
    async with async_session_maker() as session:
        outcome = await build_orchestrator(session).create(_request(local_dt(3, 10), SERVICE_ID), CLIENT)

    assert outcome.booking.status == "PENDING"
    assert outcome.booking.expires_at == clock.now + timedelta(minutes=settings.pending_expiry_minutes)
    assert outcome.booking.confirmed_at is None
    assert (CLIENT_ID, outcome.booking.booking_id, "NEW_BOOKING") in notifier.sent


@pytest.mark.anyio
async def test_auto_confirm_can_be_switched_off(async_session_maker, build_orchestrator):
    settings.auto_confirm_enabled = False
    async with async_session_maker() as session:
        outcome = await build_orchestrator(session).create(_request(local_dt(3, 10)), CLIENT)

    assert outcome.booking.status == "PENDING"
    assert not outcome.booking.auto_confirmed


@pytest.mark.anyio
async def test_create_rejects_unknown_or_inactive_service(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        with pytest.raises(NotFoundError) as excinfo:
            await orchestrator.create(_request(local_dt(3, 10), INACTIVE_SERVICE_ID), CLIENT)
        assert excinfo.value.code == "SERVICE_NOT_FOUND"

        with pytest.raises(NotFoundError):
            await orchestrator.create(_request(local_dt(3, 10), master_id=OTHER_MASTER_ID), CLIENT)


@pytest.mark.anyio
async def test_create_rejects_time_outside_business_hours(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        with pytest.raises(ValidationError) as excinfo:
            await build_orchestrator(session).create(_request(local_dt(3, 22, 30)), CLIENT)

    assert excinfo.value.code == "INVALID_TIME"


@pytest.mark.anyio
async def test_expired_confirm_fails_and_booking_stays_expired(async_session_maker, build_orchestrator, clock):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        created = await orchestrator.create(_request(local_dt(3, 10), SERVICE_ID), CLIENT)
        booking_id = created.booking.booking_id

        clock.advance(minutes=31)
        expired_at = clock.now
        with pytest.raises(ExpiredError):
            await orchestrator.manage(booking_id, "confirm", ActionPayload(), MASTER)

        clock.advance(minutes=5)
        first = await orchestrator.get(booking_id, CLIENT)
        second = await orchestrator.get(booking_id, CLIENT)

    assert first.booking.status == "EXPIRED"
    assert first.booking.expired_at == expired_at
    assert second.booking.expired_at == expired_at
    assert not first.permissions.can_cancel


@pytest.mark.anyio
async def test_pending_bookings_do_not_block_until_confirmed(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        first = await orchestrator.create(_request(local_dt(3, 10), SERVICE_ID), CLIENT)
        second = await orchestrator.create(_request(local_dt(3, 10), SERVICE_ID), OTHER_CLIENT)
        second_id = second.booking.booking_id

        confirmed = await orchestrator.manage(first.booking.booking_id, "confirm", ActionPayload(), MASTER)
        assert confirmed.booking.status == "CONFIRMED"
        assert confirmed.booking.expires_at is None

        with pytest.raises(ConflictError):
            await orchestrator.manage(second_id, "confirm", ActionPayload(), MASTER)

        reloaded = await orchestrator.get(second_id, OTHER_CLIENT)
        assert reloaded.booking.status == "PENDING"


@pytest.mark.anyio
async def test_complete_on_pending_leaves_booking_unchanged(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        created = await orchestrator.create(_request(local_dt(3, 10), SERVICE_ID), CLIENT)
        booking_id = created.booking.booking_id
        before = created.booking.updated_at

        with pytest.raises(InvalidStateError):
            await orchestrator.manage(booking_id, "complete", ActionPayload(), MASTER)

        reloaded = await orchestrator.get(booking_id, CLIENT)
        assert reloaded.booking.status == "PENDING"
        assert reloaded.booking.completed_at is None
        assert reloaded.booking.updated_at == before


@pytest.mark.anyio
async def test_client_completing_pending_booking_gets_invalid_state(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        created = await orchestrator.create(_request(local_dt(3, 10), SERVICE_ID), CLIENT)
        booking_id = created.booking.booking_id
        before = created.booking.updated_at

        with pytest.raises(InvalidStateError):
            await orchestrator.manage(booking_id, "complete", ActionPayload(), CLIENT)
        with pytest.raises(InvalidStateError):
            await orchestrator.manage(booking_id, "start", ActionPayload(), CLIENT)

        reloaded = await orchestrator.get(booking_id, CLIENT)
        assert reloaded.booking.status == "PENDING"
        assert reloaded.booking.updated_at == before


@pytest.mark.anyio
async def test_outsider_read_does_not_expire_pending_booking(async_session_maker, build_orchestrator, clock):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        created = await orchestrator.create(_request(local_dt(3, 10), SERVICE_ID), CLIENT)
        booking_id = created.booking.booking_id

        clock.advance(minutes=31)
        with pytest.raises(PermissionDeniedError):
            await orchestrator.get(booking_id, OTHER_CLIENT)
        with pytest.raises(PermissionDeniedError):
            await orchestrator.manage(booking_id, "cancel", ActionPayload(), OTHER_CLIENT)

        stored = await orchestrator.repository.get_booking(booking_id)
        assert stored.status == "PENDING"
        assert stored.expired_at is None

        owner_view = await orchestrator.get(booking_id, CLIENT)
        assert owner_view.booking.status == "EXPIRED"
        assert owner_view.booking.expired_at == clock.now


@pytest.mark.anyio
async def test_seeded_catalog_keeps_optional_fields(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        repository = build_orchestrator(session).repository

        rated = await repository.get_master(MASTER_ID)
        unrated = await repository.get_master(OTHER_MASTER_ID)
        uncategorized = await repository.get_service_info(INACTIVE_SERVICE_ID, MASTER_ID)
        massage = await repository.get_service_info(OTHER_SERVICE_ID, OTHER_MASTER_ID)

    assert rated.rating == Decimal("4.80")
    assert rated.response_time_minutes == 10
    assert unrated.display_name == "Nurlan"
    assert unrated.rating is None
    assert unrated.response_time_minutes is None
    assert uncategorized.category is None
    assert massage.category == "wellness"


@pytest.mark.anyio
async def test_actor_and_action_guards(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        created = await orchestrator.create(_request(local_dt(3, 10), SERVICE_ID), CLIENT)
        booking_id = created.booking.booking_id

        with pytest.raises(PermissionDeniedError):
            await orchestrator.manage(booking_id, "confirm", ActionPayload(), CLIENT)
        with pytest.raises(PermissionDeniedError):
            await orchestrator.get(booking_id, OTHER_CLIENT)
        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.manage(booking_id, "teleport", ActionPayload(), MASTER)
        assert excinfo.value.code == "INVALID_ACTION"
        with pytest.raises(NotFoundError):
            await orchestrator.get("missing", CLIENT)


@pytest.mark.anyio
async def test_online_booking_lifecycle_records_payments(async_session_maker, build_orchestrator, clock, notifier):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        created = await orchestrator.create(_request(local_dt(2, 10), payment_method="online"), CLIENT)
        booking_id = created.booking.booking_id

        clock.now = local_dt(2, 9, 50)
        started = await orchestrator.manage(booking_id, "start", ActionPayload(), MASTER)
        assert started.booking.status == "IN_PROGRESS"
        assert started.permissions.can_complete

        completed = await orchestrator.manage(booking_id, "complete", ActionPayload(), MASTER)
        assert completed.booking.status == "COMPLETED"
        assert completed.booking.completed_at == clock.now
        assert completed.warnings == []

        transactions = await _transactions(session, booking_id)

    assert transactions == [
        ("PAYMENT", Decimal("1000.00"), "COMPLETED"),
        ("PAYOUT", Decimal("950.00"), "PENDING"),
    ]
    assert (CLIENT_ID, booking_id, "STARTED") in notifier.sent
    assert (CLIENT_ID, booking_id, "COMPLETED") in notifier.sent


@pytest.mark.anyio
async def test_start_outside_tolerance_is_rejected(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        created = await orchestrator.create(_request(local_dt(3, 10)), CLIENT)

        with pytest.raises(ValidationError):
            await orchestrator.manage(created.booking.booking_id, "start", ActionPayload(), MASTER)


@pytest.mark.anyio
async def test_reschedule_moves_money_with_urgency(async_session_maker, build_orchestrator, clock, notifier):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        created = await orchestrator.create(_request(local_dt(2, 14), payment_method="online"), CLIENT)
        booking_id = created.booking.booking_id

        clock.now = local_dt(2, 8)
        urgent = await orchestrator.manage(
            booking_id, "reschedule", ActionPayload(new_starts_at=local_dt(2, 9)), CLIENT
        )
        assert urgent.price_difference == Decimal("250.00")
        assert urgent.booking.status == "CONFIRMED"
        assert urgent.booking.urgent_booking
        assert urgent.booking.total_amount == Decimal("1250.00")
        assert urgent.booking.starts_at == local_dt(2, 9)
        assert urgent.booking.ends_at == local_dt(2, 10)
        assert urgent.booking.rescheduled_by == CLIENT_ID

        relaxed = await orchestrator.manage(
            booking_id, "reschedule", ActionPayload(new_starts_at=local_dt(2, 14)), CLIENT
        )
        assert relaxed.price_difference == Decimal("-250.00")
        assert not relaxed.booking.urgent_booking
        assert relaxed.booking.total_amount == Decimal("1000.00")

        transactions = await _transactions(session, booking_id)

    assert transactions == [
        ("ADDITIONAL_PAYMENT", Decimal("250.00"), "COMPLETED"),
        ("PARTIAL_REFUND", Decimal("250.00"), "COMPLETED"),
        ("PAYMENT", Decimal("1000.00"), "COMPLETED"),
    ]
    assert (MASTER_ID, booking_id, "RESCHEDULED") in notifier.sent


@pytest.mark.anyio
async def test_reschedule_onto_taken_interval_conflicts(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        await orchestrator.create(_request(local_dt(3, 10)), CLIENT)
        later = await orchestrator.create(_request(local_dt(3, 12)), OTHER_CLIENT)
        booking_id = later.booking.booking_id

        with pytest.raises(ConflictError):
            await orchestrator.manage(
                booking_id, "reschedule", ActionPayload(new_starts_at=local_dt(3, 10, 30)), OTHER_CLIENT
            )
        unchanged = await orchestrator.get(booking_id, OTHER_CLIENT)
        assert unchanged.booking.starts_at == local_dt(3, 12)

        # overlapping only its own old interval is fine
        moved = await orchestrator.manage(
            booking_id, "reschedule", ActionPayload(new_starts_at=local_dt(3, 11, 30)), MASTER
        )
        assert moved.booking.starts_at == local_dt(3, 11, 30)
        assert moved.price_difference == Decimal("0.00")


@pytest.mark.anyio
async def test_reschedule_with_longer_duration_checks_new_interval(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        first = await orchestrator.create(_request(local_dt(3, 10)), CLIENT)
        first_id = first.booking.booking_id
        await orchestrator.create(_request(local_dt(3, 12)), OTHER_CLIENT)

        with pytest.raises(ConflictError):
            await orchestrator.manage(
                first_id,
                "reschedule",
                ActionPayload(new_starts_at=local_dt(3, 10), new_duration_minutes=150),
                CLIENT,
            )
        unchanged = await orchestrator.get(first_id, CLIENT)
        assert unchanged.booking.duration_minutes == 60
        assert unchanged.booking.ends_at == local_dt(3, 11)

        longer = await orchestrator.manage(
            first_id,
            "reschedule",
            ActionPayload(new_starts_at=local_dt(3, 10), new_duration_minutes=120),
            CLIENT,
        )

    assert longer.booking.duration_minutes == 120
    assert longer.booking.ends_at == local_dt(3, 12)
    assert longer.booking.total_amount == Decimal("1000.00")


@pytest.mark.anyio
async def test_late_cancellation_by_admin_keeps_fee_and_notifies_both(
    async_session_maker, build_orchestrator, clock, notifier
):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        created = await orchestrator.create(_request(local_dt(2, 10), payment_method="online"), CLIENT)
        booking_id = created.booking.booking_id

        clock.now = local_dt(2, 9)
        cancelled = await orchestrator.manage(booking_id, "cancel", ActionPayload(), ADMIN)
        transactions = await _transactions(session, booking_id)

    assert cancelled.cancellation_fee == Decimal("500.00")
    assert cancelled.refund_amount == Decimal("500.00")
    assert ("REFUND", Decimal("500.00"), "COMPLETED") in transactions
    assert (CLIENT_ID, booking_id, "CANCELLED") in notifier.sent
    assert (MASTER_ID, booking_id, "CANCELLED") in notifier.sent


@pytest.mark.anyio
async def test_payment_failure_becomes_warning(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session, gateway=FailingGateway())
        created = await orchestrator.create(_request(local_dt(3, 10), payment_method="online"), CLIENT)
        booking_id = created.booking.booking_id

        assert created.booking.status == "CONFIRMED"
        assert created.warnings == ["payment_capture_failed"]

        cancelled = await orchestrator.manage(booking_id, "cancel", ActionPayload(), CLIENT)
        assert cancelled.booking.status == "CANCELLED"
        assert cancelled.warnings == []

        transactions = await _transactions(session, booking_id)

    assert transactions == [("PAYMENT", Decimal("1000.00"), "FAILED")]


@pytest.mark.anyio
async def test_notification_failure_becomes_warning(async_session_maker, build_orchestrator, notifier):
    notifier.fail = True
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        created = await orchestrator.create(_request(local_dt(3, 10), SERVICE_ID), CLIENT)
        reloaded = await orchestrator.get(created.booking.booking_id, CLIENT)

    assert created.warnings == ["notification_new_booking_failed", "notification_new_booking_failed"]
    assert reloaded.booking.status == "PENDING"


@pytest.mark.anyio
async def test_concurrent_creates_allow_exactly_one(async_session_maker, build_orchestrator):
    results: list[str] = []

    async def attempt(auth) -> None:
        async with async_session_maker() as session:
            try:
                await build_orchestrator(session).create(_request(local_dt(3, 10)), auth)
            except ConflictError:
                results.append("conflict")
            else:
                results.append("created")

    async with anyio.create_task_group() as tg:
        tg.start_soon(attempt, CLIENT)
        tg.start_soon(attempt, OTHER_CLIENT)

    assert sorted(results) == ["conflict", "created"]


@pytest.mark.anyio
async def test_list_bookings_filters_sorts_and_paginates(async_session_maker, build_orchestrator, clock):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        await orchestrator.create(_request(local_dt(3, 12)), CLIENT)
        await orchestrator.create(_request(local_dt(3, 10), notes="Door code 42"), CLIENT)
        pending = await orchestrator.create(_request(local_dt(4, 10), SERVICE_ID), CLIENT)
        await orchestrator.create(_request(local_dt(5, 10)), OTHER_CLIENT)

        page = await orchestrator.list_bookings(CLIENT, sort=BookingSort(sort_order="asc"), limit=2)
        assert page.total_count == 3
        assert page.total_pages == 2
        assert page.has_next_page
        assert not page.has_previous_page
        assert [booking.starts_at for booking, _ in page.items] == [local_dt(3, 10), local_dt(3, 12)]

        confirmed = await orchestrator.list_bookings(CLIENT, filters=BookingFilters(statuses=("CONFIRMED",)))
        assert confirmed.total_count == 2

        searched = await orchestrator.list_bookings(CLIENT, filters=BookingFilters(search="door"))
        assert [booking.notes for booking, _ in searched.items] == ["Door code 42"]

        as_master = await orchestrator.list_bookings(MASTER)
        assert as_master.total_count == 4

        clock.advance(minutes=31)
        expired = await orchestrator.list_bookings(CLIENT, filters=BookingFilters(statuses=("PENDING",)))
        assert [booking.booking_id for booking, _ in expired.items] == [pending.booking.booking_id]
        assert expired.items[0][0].status == "EXPIRED"

        with pytest.raises(ValidationError):
            await orchestrator.list_bookings(CLIENT, limit=101)


@pytest.mark.anyio
async def test_available_slots_exclude_active_bookings(async_session_maker, build_orchestrator):
    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session)
        await orchestrator.create(_request(local_dt(3, 10)), CLIENT)
        await orchestrator.create(_request(local_dt(3, 14), SERVICE_ID), CLIENT)

        lookup = await orchestrator.available_slots(MASTER_ID, SERVICE_ID, local_dt(3, 12).date())

    starts = [slot.starts_at for slot in lookup.slots]
    assert lookup.duration_minutes == 60
    assert local_dt(3, 10) not in starts
    assert local_dt(3, 9, 30) not in starts
    # pending bookings leave the slot open
    assert local_dt(3, 14) in starts
    assert local_dt(3, 11) in starts
