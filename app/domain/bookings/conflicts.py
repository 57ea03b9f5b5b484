from datetime import datetime
from typing import Iterable, Protocol


class Interval(Protocol):
    booking_id: str
    starts_at: datetime
    ends_at: datetime


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open overlap test: touching intervals do not conflict."""
    return a_start < b_end and b_start < a_end


def find_conflicts(
    starts_at: datetime,
    ends_at: datetime,
    occupied: Iterable[Interval],
    exclude_id: str | None = None,
) -> list[Interval]:
    return [
        interval
        for interval in occupied
        if interval.booking_id != exclude_id
        and overlaps(starts_at, ends_at, interval.starts_at, interval.ends_at)
    ]


def is_admissible(
    starts_at: datetime,
    ends_at: datetime,
    occupied: Iterable[Interval],
    exclude_id: str | None = None,
) -> bool:
    return not find_conflicts(starts_at, ends_at, occupied, exclude_id=exclude_id)
