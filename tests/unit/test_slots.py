"""Tests for the slot calculator."""

import pytest
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from app.core.scheduling.slots import (
    BusyInterval,
    TimeSlot,
    available_slots,
    bookable_days,
    compute_slots,
    format_day_label,
    format_time_label,
    generate_candidates,
)
from app.core.tenant import BusinessHours, DayHours


UTC = timezone.utc
MONDAY = date(2025, 7, 21)
NOW = datetime(2025, 7, 21, 8, 50, tzinfo=UTC)
HALF_HOUR = timedelta(minutes=30)


def at(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=UTC)


@pytest.fixture
def hours():
    return BusinessHours.every_day(time(7, 0), time(18, 0))


class TestComputeSlots:
    """Test compute_slots paging and filtering."""

    def test_first_slot_after_busy_and_lead_time(self, hours):
        """Busy 09:00-09:30 with 08:50 + 30 min lead leaves 09:30 first."""
        page = compute_slots(
            day=MONDAY,
            business_hours=hours,
            busy_intervals=[BusyInterval(at(9), at(9, 30))],
            slot_duration=HALF_HOUR,
            min_lead_time=HALF_HOUR,
            now=NOW,
        )

        assert page.slots[0].start == at(9, 30)
        assert page.slots[0].display_label == "9:30 AM"

    def test_never_overlaps_busy(self, hours):
        """No returned slot overlaps a busy interval."""
        busy = [
            BusyInterval(at(10), at(11, 15)),
            BusyInterval(at(13, 45), at(14, 10)),
        ]

        slots = available_slots(MONDAY, hours, busy, HALF_HOUR, HALF_HOUR, NOW, UTC)

        assert slots
        for slot in slots:
            assert not any(b.overlaps(slot.start, slot.end) for b in busy)

    def test_busy_end_is_exclusive(self, hours):
        """A slot starting exactly when a busy interval ends is free."""
        busy = [BusyInterval(at(9, 30), at(10))]

        slots = available_slots(MONDAY, hours, busy, HALF_HOUR, HALF_HOUR, NOW, UTC)
        starts = [s.start for s in slots]

        assert at(9, 30) not in starts
        assert at(10) in starts

    def test_lead_time_on_today(self, hours):
        """No slot starts before now + lead time."""
        slots = available_slots(MONDAY, hours, [], HALF_HOUR, timedelta(hours=2), NOW, UTC)

        assert min(s.start for s in slots) >= NOW + timedelta(hours=2)

    def test_lead_time_does_not_affect_future_days(self, hours):
        """Tomorrow starts at opening time."""
        tomorrow = MONDAY + timedelta(days=1)

        slots = available_slots(tomorrow, hours, [], HALF_HOUR, HALF_HOUR, NOW, UTC)

        assert slots[0].start == at(7, day=tomorrow)
        assert len(slots) == 22

    def test_past_day_is_empty(self, hours):
        page = compute_slots(
            day=MONDAY - timedelta(days=1),
            business_hours=hours,
            busy_intervals=[],
            slot_duration=HALF_HOUR,
            min_lead_time=HALF_HOUR,
            now=NOW,
        )

        assert page.slots == []
        assert page.has_more is False
        assert page.total == 0

    def test_pages_concatenate_to_full_set(self, hours):
        """Following has_more yields every slot once, in order."""
        busy = [BusyInterval(at(9), at(9, 30))]
        expected = available_slots(MONDAY, hours, busy, HALF_HOUR, HALF_HOUR, NOW, UTC)

        collected = []
        page_number = 0
        while True:
            page = compute_slots(
                MONDAY, hours, busy, HALF_HOUR, HALF_HOUR, NOW,
                page=page_number, page_size=4,
            )
            collected.extend(page.slots)
            if not page.has_more:
                break
            page_number += 1

        assert collected == expected
        assert len({s.start for s in collected}) == len(collected)

    def test_page_boundaries(self, hours):
        """17 slots from 09:30 to 17:30 split 9 + 8."""
        busy = [BusyInterval(at(9), at(9, 30))]

        first = compute_slots(MONDAY, hours, busy, HALF_HOUR, HALF_HOUR, NOW, page=0)
        second = compute_slots(MONDAY, hours, busy, HALF_HOUR, HALF_HOUR, NOW, page=1)

        assert first.total == 17
        assert len(first.slots) == 9
        assert first.has_more is True
        assert len(second.slots) == 8
        assert second.has_more is False
        assert second.slots[-1].start == at(17, 30)

    def test_deterministic(self, hours):
        busy = [BusyInterval(at(12), at(13))]

        first = compute_slots(MONDAY, hours, busy, HALF_HOUR, HALF_HOUR, NOW, page=1)
        second = compute_slots(MONDAY, hours, busy, HALF_HOUR, HALF_HOUR, NOW, page=1)

        assert first == second

    def test_invalid_page(self, hours):
        with pytest.raises(ValueError):
            compute_slots(MONDAY, hours, [], HALF_HOUR, HALF_HOUR, NOW, page=-1)

    def test_invalid_page_size(self, hours):
        with pytest.raises(ValueError):
            compute_slots(MONDAY, hours, [], HALF_HOUR, HALF_HOUR, NOW, page_size=0)

    def test_naive_now_rejected(self, hours):
        with pytest.raises(ValueError):
            compute_slots(MONDAY, hours, [], HALF_HOUR, HALF_HOUR, datetime(2025, 7, 21, 8, 50))


class TestGenerateCandidates:
    """Test candidate generation from business hours."""

    def test_trailing_slot_dropped(self):
        hours = BusinessHours(week={0: DayHours(open=time(9, 0), close=time(10, 45))})

        candidates = generate_candidates(MONDAY, hours, HALF_HOUR, UTC)

        assert [c.start for c in candidates] == [at(9), at(9, 30), at(10)]

    def test_closed_day(self):
        """Default week is closed on Sunday."""
        sunday = date(2025, 7, 20)

        assert generate_candidates(sunday, BusinessHours(), HALF_HOUR, UTC) == []

    def test_saturday_short_hours(self):
        saturday = date(2025, 7, 26)

        candidates = generate_candidates(saturday, BusinessHours(), timedelta(hours=1), UTC)

        assert candidates[0].start == at(7, day=saturday)
        assert candidates[-1].end == at(14, day=saturday)

    def test_tenant_timezone(self):
        """Opening time is local to the tenant."""
        london = ZoneInfo("Europe/London")
        hours = BusinessHours.every_day(time(7, 0), time(18, 0))

        candidates = generate_candidates(MONDAY, hours, HALF_HOUR, london)

        # BST is UTC+1 in July
        assert candidates[0].start == at(6)

    def test_zero_duration_rejected(self):
        with pytest.raises(ValueError):
            generate_candidates(MONDAY, BusinessHours(), timedelta(0), UTC)


class TestBookableDays:
    """Test the date picker source."""

    def test_skips_fully_booked_day(self, hours):
        tuesday = MONDAY + timedelta(days=1)
        busy = [BusyInterval(at(0, day=tuesday), at(0, day=tuesday + timedelta(days=1)))]

        days = bookable_days(NOW, hours, busy, HALF_HOUR, HALF_HOUR, count=3, horizon_days=14, tz=UTC)

        assert days == [MONDAY, date(2025, 7, 23), date(2025, 7, 24)]

    def test_skips_closed_days(self):
        days = bookable_days(NOW, BusinessHours(), [], HALF_HOUR, HALF_HOUR, count=7, horizon_days=7, tz=UTC)

        assert date(2025, 7, 27) not in days  # Sunday
        assert len(days) == 6

    def test_today_dropped_after_closing(self, hours):
        late = datetime(2025, 7, 21, 17, 45, tzinfo=UTC)

        days = bookable_days(late, hours, [], HALF_HOUR, HALF_HOUR, count=1, horizon_days=7, tz=UTC)

        assert days == [MONDAY + timedelta(days=1)]


class TestLabels:
    """Test display labels and ids."""

    def test_time_label(self):
        assert format_time_label(at(9, 30)) == "9:30 AM"
        assert format_time_label(at(12)) == "12:00 PM"
        assert format_time_label(at(17, 30)) == "5:30 PM"

    def test_day_label(self):
        assert format_day_label(date(2025, 7, 22)) == "Tuesday, 22 Jul 2025"

    def test_slot_id(self):
        slot = TimeSlot(start=at(9, 30), end=at(10), display_label="9:30 AM")

        assert slot.slot_id == "slot_202507210930"

    def test_slot_dict(self):
        slot = TimeSlot(start=at(9, 30), end=at(10), display_label="9:30 AM")

        assert TimeSlot.from_dict(slot.to_dict()) == slot
