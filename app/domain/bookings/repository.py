import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.bookings.conflicts import find_conflicts
from app.domain.bookings.db_models import Booking, Master, MasterService, MasterWorkingHours
from app.domain.bookings.state_machine import ACTIVE_STATUSES, BookingPatch
from app.domain.errors import ConflictError, InvalidStateError, NotFoundError
from app.infra.locks import CalendarLock
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)

SortField = Literal["scheduled_at", "created_at", "total_amount"]
SortOrder = Literal["asc", "desc"]

SORT_COLUMNS = {
    "scheduled_at": Booking.starts_at,
    "created_at": Booking.created_at,
    "total_amount": Booking.total_amount,
}


@dataclass(frozen=True)
class BookingFilters:
    statuses: tuple[str, ...] = ()
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None


@dataclass(frozen=True)
class BookingSort:
    sort_by: SortField = "scheduled_at"
    sort_order: SortOrder = "desc"


@dataclass(frozen=True)
class BookingPage:
    items: list[Booking]
    total_count: int


class BookingRepository:
    """Storage adapter for bookings and the master records they reference.

    Writes that activate or move an interval run under the master's calendar
    lock and a row lock on the master, and re-check overlap in the same
    transaction before writing.
    """

    def __init__(self, session: AsyncSession, calendar_lock: CalendarLock) -> None:
        self.session = session
        self.calendar_lock = calendar_lock

    async def get_booking(self, booking_id: str) -> Booking | None:
        stmt = (
            select(Booking)
            .where(Booking.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_master(self, master_id: str) -> Master | None:
        return await self.session.get(Master, master_id)

    async def get_service_info(self, service_id: str, master_id: str) -> MasterService | None:
        stmt = select(MasterService).where(
            MasterService.service_id == service_id,
            MasterService.master_id == master_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_master_availability(self, master_id: str, day_of_week: int) -> list[MasterWorkingHours]:
        stmt = (
            select(MasterWorkingHours)
            .where(
                MasterWorkingHours.master_id == master_id,
                MasterWorkingHours.day_of_week == day_of_week,
                MasterWorkingHours.is_available.is_(True),
            )
            .order_by(MasterWorkingHours.start_time)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def query_master_bookings_in_range(
        self,
        master_id: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
    ) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(
                Booking.master_id == master_id,
                Booking.status.in_(sorted(ACTIVE_STATUSES)),
                Booking.starts_at < end,
                Booking.ends_at > start,
            )
            .order_by(Booking.starts_at)
            .execution_options(populate_existing=True)
        )
        if exclude_id:
            stmt = stmt.where(Booking.booking_id != exclude_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def create_booking(self, booking: Booking) -> Booking:
        async with self.calendar_lock.hold(booking.master_id):
            try:
                await self._lock_master_row(booking.master_id)
                await self._ensure_free(booking.master_id, booking.starts_at, booking.ends_at, None, "create")
                self.session.add(booking)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise
        await self.session.refresh(booking)
        return booking

    async def update_booking(
        self,
        booking_id: str,
        patch: BookingPatch,
        expected_status: str,
    ) -> Booking:
        current = await self.get_booking(booking_id)
        if current is None:
            raise NotFoundError("Booking not found", code="BOOKING_NOT_FOUND")

        target_status = patch.status or current.status
        moves_interval = "starts_at" in patch.values
        becomes_active = target_status in ACTIVE_STATUSES and current.status not in ACTIVE_STATUSES
        if not (becomes_active or moves_interval):
            return await self._apply_patch(booking_id, patch, expected_status)

        starts_at = patch.values.get("starts_at", current.starts_at)
        ends_at = patch.values.get("ends_at", current.ends_at)
        async with self.calendar_lock.hold(current.master_id):
            try:
                await self._lock_master_row(current.master_id)
                await self._ensure_free(current.master_id, starts_at, ends_at, booking_id, patch.transition)
            except Exception:
                await self.session.rollback()
                raise
            return await self._apply_patch(booking_id, patch, expected_status)

    async def list_user_bookings(
        self,
        user_id: str,
        role: Literal["client", "master"],
        filters: BookingFilters,
        sort: BookingSort,
        page: int,
        limit: int,
    ) -> BookingPage:
        stmt = select(Booking)
        if role == "master":
            stmt = stmt.where(Booking.master_id == user_id)
        else:
            stmt = stmt.where(Booking.client_id == user_id)
        stmt = self._apply_filters(stmt, filters)

        count_stmt = select(func.count()).select_from(stmt.subquery())
        total_count = int(await self.session.scalar(count_stmt) or 0)

        column = SORT_COLUMNS.get(sort.sort_by, Booking.starts_at)
        ordering = column.asc() if sort.sort_order == "asc" else column.desc()
        stmt = stmt.order_by(ordering, Booking.booking_id).offset((page - 1) * limit).limit(limit)
        result = await self.session.execute(stmt)
        return BookingPage(items=list(result.scalars().all()), total_count=total_count)

    def _apply_filters(self, stmt: Select, filters: BookingFilters) -> Select:
        if filters.statuses:
            stmt = stmt.where(Booking.status.in_(filters.statuses))
        if filters.date_from is not None:
            stmt = stmt.where(Booking.starts_at >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(Booking.starts_at <= filters.date_to)
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            stmt = stmt.where(or_(Booking.notes.ilike(pattern), Booking.address.ilike(pattern)))
        return stmt

    async def _lock_master_row(self, master_id: str) -> Master:
        stmt = select(Master).where(Master.master_id == master_id).with_for_update()
        result = await self.session.execute(stmt)
        master = result.scalar_one_or_none()
        if master is None:
            raise NotFoundError("Master not found", code="MASTER_NOT_FOUND")
        return master

    async def _ensure_free(
        self,
        master_id: str,
        starts_at: datetime,
        ends_at: datetime,
        exclude_id: str | None,
        operation: str,
    ) -> None:
        occupied = await self.query_master_bookings_in_range(master_id, starts_at, ends_at, exclude_id=exclude_id)
        conflicts = find_conflicts(starts_at, ends_at, occupied, exclude_id=exclude_id)
        if conflicts:
            metrics.record_conflict(operation)
            logger.info(
                "booking_conflict",
                extra={
                    "extra": {
                        "master_id": master_id,
                        "operation": operation,
                        "conflicting_ids": [item.booking_id for item in conflicts],
                    }
                },
            )
            raise ConflictError("Time slot is not available")

    async def _apply_patch(self, booking_id: str, patch: BookingPatch, expected_status: str) -> Booking:
        stmt = (
            update(Booking)
            .where(Booking.booking_id == booking_id, Booking.status == expected_status)
            .values(**patch.values, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            if result.rowcount != 1:
                raise InvalidStateError(
                    "Booking was modified concurrently, please reload",
                    code="INVALID_STATUS",
                )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        booking = await self.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", code="BOOKING_NOT_FOUND")
        return booking
