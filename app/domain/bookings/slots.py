from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Iterator, Sequence
from zoneinfo import ZoneInfo

from app.domain.bookings import fees
from app.domain.bookings.conflicts import Interval, overlaps
from app.domain.bookings.state_machine import BUSINESS_DAY_END, BUSINESS_DAY_START, MAX_ADVANCE

SLOT_STEP_MINUTES = 30
MIN_LEAD_MINUTES = 15


@dataclass(frozen=True)
class WorkWindow:
    start_time: time
    end_time: time


@dataclass(frozen=True)
class Slot:
    starts_at: datetime
    ends_at: datetime
    available: bool
    price: Decimal
    urgent_fee: Decimal | None
    is_urgent: bool


class SlotAvailabilityCalculator:
    """Candidate slots for one master on one local day.

    Iterating the calculator walks every work window in ascending order and
    yields the free slots lazily. Each iteration starts from scratch, so the
    same calculator can be consumed more than once with identical results.
    """

    def __init__(
        self,
        target_date: date,
        windows: Sequence[WorkWindow],
        duration_minutes: int,
        occupied: Sequence[Interval],
        base_price: Decimal,
        now: datetime,
        local_tz: ZoneInfo,
        *,
        step_minutes: int = SLOT_STEP_MINUTES,
        min_lead_minutes: int = MIN_LEAD_MINUTES,
    ) -> None:
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        self.target_date = target_date
        self.windows = sorted(windows, key=lambda window: window.start_time)
        self.duration = timedelta(minutes=duration_minutes)
        self.occupied = tuple(occupied)
        self.base_price = fees.to_money(base_price)
        self.now = now
        self.local_tz = local_tz
        self.step = timedelta(minutes=step_minutes)
        self.min_lead = timedelta(minutes=min_lead_minutes)

    def __iter__(self) -> Iterator[Slot]:
        return self._generate()

    def _window_bounds(self, window: WorkWindow) -> tuple[datetime, datetime]:
        # bookable hours cap every work window
        start_time = max(window.start_time, BUSINESS_DAY_START)
        end_time = min(window.end_time, BUSINESS_DAY_END)
        start_local = datetime.combine(self.target_date, start_time, tzinfo=self.local_tz)
        end_local = datetime.combine(self.target_date, end_time, tzinfo=self.local_tz)
        return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)

    def _generate(self) -> Iterator[Slot]:
        cutoff = self.now + self.min_lead
        horizon = self.now + MAX_ADVANCE
        last_emitted: datetime | None = None
        for window in self.windows:
            window_start, window_end = self._window_bounds(window)
            candidate = window_start
            while candidate + self.duration <= window_end and candidate <= horizon:
                candidate_end = candidate + self.duration
                # overlapping windows must not repeat a start
                if last_emitted is not None and candidate <= last_emitted:
                    candidate += self.step
                    continue
                if candidate >= cutoff and not self._is_occupied(candidate, candidate_end):
                    last_emitted = candidate
                    yield self._build_slot(candidate, candidate_end)
                candidate += self.step

    def _is_occupied(self, starts_at: datetime, ends_at: datetime) -> bool:
        return any(overlaps(starts_at, ends_at, item.starts_at, item.ends_at) for item in self.occupied)

    def _build_slot(self, starts_at: datetime, ends_at: datetime) -> Slot:
        urgent = fees.is_urgent(starts_at, self.now)
        return Slot(
            starts_at=starts_at,
            ends_at=ends_at,
            available=True,
            price=fees.total_amount(self.base_price, urgent),
            urgent_fee=fees.urgent_fee(self.base_price) if urgent else None,
            is_urgent=urgent,
        )
