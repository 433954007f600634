"""
Slot Calculator.

Turns a calendar's busy intervals and a weekly business-hours policy into
the ordered, paginated list of bookable slots for a day.

Everything here is pure: the current time is always passed in, never read,
so identical inputs produce identical pages.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterable, Optional, Sequence

from app.core.tenant import BusinessHours


@dataclass(frozen=True)
class BusyInterval:
    """Half-open [start, end) range already occupied on a calendar."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap test."""
        return start < self.end and end > self.start


@dataclass(frozen=True)
class TimeSlot:
    """Bookable slot. Identity is the (start, end) pair."""

    start: datetime
    end: datetime
    display_label: str

    @property
    def slot_id(self) -> str:
        """Opaque option id used when presenting the slot."""
        return f"slot_{self.start.strftime('%Y%m%d%H%M')}"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "display_label": self.display_label,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TimeSlot":
        """Create from stored dict."""
        return cls(
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
            display_label=data.get("display_label", ""),
        )


@dataclass
class SlotPage:
    """One page of available slots."""

    slots: list[TimeSlot]
    has_more: bool
    page: int
    total: int


def format_time_label(moment: datetime) -> str:
    """Format like '9:30 AM'."""
    return moment.strftime("%I:%M %p").lstrip("0")


def format_day_label(day: date) -> str:
    """Format like 'Monday, 22 Jul 2025'."""
    return day.strftime("%A, %d %b %Y")


def day_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    """Start of the day and start of the next day in the tenant timezone."""
    start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return start, end


def generate_candidates(
    day: date,
    business_hours: BusinessHours,
    slot_duration: timedelta,
    tz: tzinfo,
) -> list[TimeSlot]:
    """All fixed-granularity slots inside opening hours, ignoring the calendar.

    A trailing slot that would run past closing time is dropped.
    """
    if slot_duration <= timedelta(0):
        raise ValueError("slot_duration must be positive")

    hours = business_hours.for_weekday(day.weekday())
    if hours is None:
        return []

    slot_start = datetime.combine(day, hours.open, tzinfo=tz)
    closing = datetime.combine(day, hours.close, tzinfo=tz)

    candidates = []
    while slot_start + slot_duration <= closing:
        slot_end = slot_start + slot_duration
        candidates.append(
            TimeSlot(
                start=slot_start,
                end=slot_end,
                display_label=format_time_label(slot_start),
            )
        )
        slot_start = slot_end

    return candidates


def is_slot_free(start: datetime, end: datetime, busy_intervals: Iterable[BusyInterval]) -> bool:
    """True if [start, end) overlaps none of the busy intervals."""
    return not any(busy.overlaps(start, end) for busy in busy_intervals)


def available_slots(
    day: date,
    business_hours: BusinessHours,
    busy_intervals: Sequence[BusyInterval],
    slot_duration: timedelta,
    min_lead_time: timedelta,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> list[TimeSlot]:
    """Full, unpaginated list of bookable slots for a day, ascending."""
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    earliest = now + min_lead_time
    return [
        slot
        for slot in generate_candidates(day, business_hours, slot_duration, tz)
        if slot.start >= earliest and is_slot_free(slot.start, slot.end, busy_intervals)
    ]


def compute_slots(
    day: date,
    business_hours: BusinessHours,
    busy_intervals: Sequence[BusyInterval],
    slot_duration: timedelta,
    min_lead_time: timedelta,
    now: datetime,
    page: int = 0,
    page_size: int = 9,
    tz: tzinfo = timezone.utc,
) -> SlotPage:
    """Compute one page of bookable slots.

    Args:
        day: Day to compute slots for (tenant-local date)
        business_hours: Weekly opening hours
        busy_intervals: Occupied ranges on the calendar
        slot_duration: Slot length (fixed granularity)
        min_lead_time: Minimum notice before a slot can be booked
        now: Current time (timezone-aware)
        page: Zero-based page index
        page_size: Slots per page
        tz: Tenant timezone

    Returns:
        SlotPage with the slice and whether more slots follow
    """
    if page < 0:
        raise ValueError("page must be >= 0")
    if page_size <= 0:
        raise ValueError("page_size must be positive")

    slots = available_slots(
        day=day,
        business_hours=business_hours,
        busy_intervals=busy_intervals,
        slot_duration=slot_duration,
        min_lead_time=min_lead_time,
        now=now,
        tz=tz,
    )

    start_index = page * page_size
    end_index = start_index + page_size

    return SlotPage(
        slots=slots[start_index:end_index],
        has_more=end_index < len(slots),
        page=page,
        total=len(slots),
    )


def bookable_days(
    now: datetime,
    business_hours: BusinessHours,
    busy_intervals: Sequence[BusyInterval],
    slot_duration: timedelta,
    min_lead_time: timedelta,
    count: int,
    horizon_days: int,
    tz: tzinfo = timezone.utc,
) -> list[date]:
    """Next `count` days (starting today) that still have a free slot.

    Args:
        now: Current time (timezone-aware)
        business_hours: Weekly opening hours
        busy_intervals: Busy ranges covering the whole horizon
        slot_duration: Slot length
        min_lead_time: Minimum notice
        count: Maximum number of days to return
        horizon_days: How far ahead to look
        tz: Tenant timezone

    Returns:
        Ascending list of dates
    """
    today = now.astimezone(tz).date()
    days: list[date] = []

    for offset in range(horizon_days):
        if len(days) >= count:
            break
        day = today + timedelta(days=offset)
        if business_hours.for_weekday(day.weekday()) is None:
            continue

        day_start, day_end = day_bounds(day, tz)
        busy_today = [b for b in busy_intervals if b.overlaps(day_start, day_end)]

        if available_slots(day, business_hours, busy_today, slot_duration, min_lead_time, now, tz):
            days.append(day)

    return days
