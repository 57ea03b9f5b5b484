import logging
from datetime import date, datetime, time, timezone
from typing import Literal

from fastapi import APIRouter, Depends, Query, status

from app.api.auth import get_auth_context
from app.dependencies import enforce_booking_rate_limit, get_orchestrator
from app.domain.bookings import schemas as booking_schemas
from app.domain.bookings.db_models import Booking
from app.domain.bookings.repository import BookingFilters, BookingSort
from app.domain.bookings.service import ActionPayload, BookingLifecycleOrchestrator, BookingOutcome, BookingRequest
from app.domain.bookings.state_machine import BookingPermissions, BookingStatus
from app.domain.identity import AuthContext
from app.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


def _booking_response(booking: Booking, permissions: BookingPermissions | None) -> booking_schemas.BookingResponse:
    response = booking_schemas.BookingResponse.model_validate(booking)
    if permissions is not None:
        response.permissions = booking_schemas.PermissionsResponse.from_permissions(permissions)
    return response


def _envelope(outcome: BookingOutcome) -> booking_schemas.BookingEnvelope:
    return booking_schemas.BookingEnvelope(
        booking=_booking_response(outcome.booking, outcome.permissions),
        warnings=outcome.warnings,
        cancellation_fee=outcome.cancellation_fee,
        refund_amount=outcome.refund_amount,
        price_difference=outcome.price_difference,
    )


def _local_day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=settings.local_tz).astimezone(timezone.utc)


def _local_day_end(value: date) -> datetime:
    return datetime.combine(value, time.max, tzinfo=settings.local_tz).astimezone(timezone.utc)


@router.post(
    "/v1/bookings",
    response_model=booking_schemas.BookingEnvelope,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(enforce_booking_rate_limit)],
)
async def create_booking(
    payload: booking_schemas.BookingCreateRequest,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: BookingLifecycleOrchestrator = Depends(get_orchestrator),
) -> booking_schemas.BookingEnvelope:
    outcome = await orchestrator.create(
        BookingRequest(
            master_id=payload.master_id,
            service_id=payload.service_id,
            starts_at=payload.starts_at,
            duration_minutes=payload.duration_minutes,
            address=payload.address,
            notes=payload.notes,
            payment_method=payload.payment_method,
        ),
        auth,
    )
    return _envelope(outcome)


@router.get("/v1/bookings", response_model=booking_schemas.BookingListResponse)
async def list_bookings(
    status_filter: list[BookingStatus] | None = Query(None, alias="status"),
    role: Literal["client", "master"] | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    search: str | None = Query(None, max_length=100),
    sort_by: Literal["scheduled_at", "created_at", "total_amount"] = "scheduled_at",
    sort_order: Literal["asc", "desc"] = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: BookingLifecycleOrchestrator = Depends(get_orchestrator),
) -> booking_schemas.BookingListResponse:
    filters = BookingFilters(
        statuses=tuple(item.value for item in status_filter or []),
        date_from=_local_day_start(date_from) if date_from else None,
        date_to=_local_day_end(date_to) if date_to else None,
        search=search or None,
    )
    result = await orchestrator.list_bookings(
        auth,
        role=role,
        filters=filters,
        sort=BookingSort(sort_by=sort_by, sort_order=sort_order),
        page=page,
        limit=limit,
    )
    return booking_schemas.BookingListResponse(
        bookings=[_booking_response(booking, permissions) for booking, permissions in result.items],
        pagination=booking_schemas.PaginationResponse(
            page=result.page,
            limit=result.limit,
            total_count=result.total_count,
            total_pages=result.total_pages,
            has_next_page=result.has_next_page,
            has_previous_page=result.has_previous_page,
        ),
    )


@router.get("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingEnvelope)
async def get_booking(
    booking_id: str,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: BookingLifecycleOrchestrator = Depends(get_orchestrator),
) -> booking_schemas.BookingEnvelope:
    outcome = await orchestrator.get(booking_id, auth)
    return _envelope(outcome)


@router.post("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingEnvelope)
async def manage_booking(
    booking_id: str,
    payload: booking_schemas.BookingActionRequest,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: BookingLifecycleOrchestrator = Depends(get_orchestrator),
) -> booking_schemas.BookingEnvelope:
    outcome = await orchestrator.manage(
        booking_id,
        payload.action,
        ActionPayload(
            reason=payload.reason,
            new_starts_at=payload.new_starts_at,
            new_duration_minutes=payload.new_duration_minutes,
        ),
        auth,
    )
    return _envelope(outcome)


@router.get("/v1/slots", response_model=booking_schemas.SlotAvailabilityResponse)
async def get_slots(
    master_id: str,
    service_id: str,
    slot_date: date = Query(..., alias="date"),
    duration_minutes: int | None = Query(None, ge=15, le=480),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: BookingLifecycleOrchestrator = Depends(get_orchestrator),
) -> booking_schemas.SlotAvailabilityResponse:
    del auth
    lookup = await orchestrator.available_slots(master_id, service_id, slot_date, duration_minutes)
    return booking_schemas.SlotAvailabilityResponse(
        date=lookup.date,
        duration_minutes=lookup.duration_minutes,
        slots=[
            booking_schemas.SlotResponse(
                starts_at=slot.starts_at,
                ends_at=slot.ends_at,
                available=slot.available,
                price=slot.price,
                urgent_fee=slot.urgent_fee,
                is_urgent=slot.is_urgent,
            )
            for slot in lookup.slots
        ],
        master=booking_schemas.MasterSummary(
            master_id=lookup.master.master_id,
            display_name=lookup.master.display_name,
            rating=float(lookup.master.rating) if lookup.master.rating is not None else None,
            response_time_minutes=lookup.master.response_time_minutes,
        ),
        service=booking_schemas.ServiceSummary(
            service_id=lookup.service.service_id,
            name=lookup.service.name,
            description=lookup.service.description,
            category=lookup.service.category,
            base_price=lookup.service.base_price,
            auto_confirm=lookup.service.auto_confirm,
        ),
        message=lookup.message,
    )
