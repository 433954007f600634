"""Shared fixtures: tenant, in-memory calendar and repositories, wired flow."""

from datetime import datetime, time, timezone
from typing import Callable, Optional
from unittest.mock import AsyncMock, patch

import pytest

from app.core.dialogue.flow import ConversationFlow
from app.core.dialogue.responses import ResponseGenerator
from app.core.errors import PersistenceFailure, UpstreamUnavailable
from app.core.events import EventBus
from app.core.leads.recorder import LeadRecorder
from app.core.scheduling.calendar_client import AvailabilityGateway, ExistingBooking
from app.core.scheduling.saga import BookingSaga
from app.core.scheduling.slots import BusyInterval
from app.core.session.manager import SessionManager
from app.core.tenant import (
    BusinessHours,
    ProviderItem,
    ServiceItem,
    TenantConfig,
    Vocabulary,
)
from app.infra.claude import ClaudeResponse
from app.infra.repositories import (
    AppointmentRecord,
    AppointmentStore,
    LeadRecord,
    LeadStore,
)


# Monday 21 July 2025, 08:50 UTC
NOW = datetime(2025, 7, 21, 8, 50, tzinfo=timezone.utc)


class FakeCalendar(AvailabilityGateway):
    """In-memory calendar. Created events count as busy."""

    def __init__(self):
        self.busy: dict[str, list[BusyInterval]] = {}
        self.events: dict[str, dict] = {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.list_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self._counter = 0

    def add_busy(self, calendar_id: str, start: datetime, end: datetime) -> None:
        self.busy.setdefault(calendar_id, []).append(BusyInterval(start=start, end=end))

    def add_event(self, calendar_id: str, start: datetime, end: datetime, contact: str, summary: str = "") -> str:
        self._counter += 1
        event_id = f"evt{self._counter}"
        self.events[event_id] = {
            "calendar_id": calendar_id,
            "start": start,
            "end": end,
            "contact": contact,
            "summary": summary,
        }
        return event_id

    async def list_busy(self, calendar_id, range_start, range_end):
        if self.list_error:
            raise self.list_error
        intervals = [
            b for b in self.busy.get(calendar_id, []) if b.overlaps(range_start, range_end)
        ]
        intervals.extend(
            BusyInterval(start=e["start"], end=e["end"])
            for e in self.events.values()
            if e["calendar_id"] == calendar_id and e["start"] < range_end and e["end"] > range_start
        )
        return sorted(intervals, key=lambda b: b.start)

    async def create_event(self, calendar_id, summary, description, start, end, customer_contact):
        if self.create_error:
            raise self.create_error
        event_id = self.add_event(calendar_id, start, end, customer_contact, summary)
        self.created.append(event_id)
        return event_id

    async def delete_event(self, calendar_id, external_event_id):
        self.deleted.append(external_event_id)
        if self.delete_error:
            raise self.delete_error
        return self.events.pop(external_event_id, None) is not None

    async def find_by_customer(self, calendar_id, customer_contact, range_start, range_end):
        return [
            ExistingBooking(
                event_id=event_id,
                calendar_id=e["calendar_id"],
                summary=e["summary"],
                start=e["start"],
                end=e["end"],
            )
            for event_id, e in self.events.items()
            if e["calendar_id"] == calendar_id
            and e["contact"] == customer_contact
            and e["start"] < range_end
            and e["end"] > range_start
        ]


class FakeAppointmentStore(AppointmentStore):
    """In-memory appointment table keyed by external event id."""

    def __init__(self):
        self.rows: dict[str, AppointmentRecord] = {}
        self.create_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self._counter = 0

    async def create(self, record):
        if self.create_error:
            raise self.create_error
        self._counter += 1
        record.id = f"appt{self._counter}"
        self.rows[record.external_event_id] = record
        return record

    async def find_existing(self, tenant_id, contact, provider_id, start):
        for row in self.rows.values():
            if (row.tenant_id, row.contact, row.provider_id, row.start) == (
                tenant_id,
                contact,
                provider_id,
                start,
            ):
                return row
        return None

    async def get_by_event_id(self, tenant_id, external_event_id):
        row = self.rows.get(external_event_id)
        return row if row is not None and row.tenant_id == tenant_id else None

    async def delete_by_event_id(self, tenant_id, external_event_id):
        if self.delete_error:
            raise self.delete_error
        row = self.rows.get(external_event_id)
        if row is None or row.tenant_id != tenant_id:
            return False
        del self.rows[external_event_id]
        return True

    async def latest_consent(self, tenant_id, contact):
        matches = [r for r in self.rows.values() if r.tenant_id == tenant_id and r.contact == contact]
        return matches[-1].consent if matches else None

    async def update_consent(self, tenant_id, contact, consent):
        count = 0
        for row in self.rows.values():
            if row.tenant_id == tenant_id and row.contact == contact:
                row.consent = dict(consent)
                count += 1
        return count


class FakeLeadStore(LeadStore):
    """In-memory lead table keyed by (tenant_id, contact)."""

    def __init__(self):
        self.rows: dict[tuple[str, str], LeadRecord] = {}
        self.fail = False

    async def get(self, tenant_id, contact):
        if self.fail:
            raise PersistenceFailure("lead store down")
        return self.rows.get((tenant_id, contact))

    async def apply(self, tenant_id, contact, mutate: Callable[[LeadRecord], None]):
        if self.fail:
            raise PersistenceFailure("lead store down")
        record = self.rows.setdefault(
            (tenant_id, contact), LeadRecord(tenant_id=tenant_id, contact=contact)
        )
        mutate(record)
        return record


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def tenant():
    """Salon open 07:00-18:00 every day, 30 minute slots, 30 minute lead time."""
    return TenantConfig(
        tenant_id="glow-salon",
        timezone="UTC",
        business_hours=BusinessHours.every_day(time(7, 0), time(18, 0)),
        slot_duration_minutes=30,
        min_lead_time_minutes=30,
        services=[
            ServiceItem(
                id="haircut",
                name="Haircut",
                price=25.0,
                follow_up_message="Time for a trim? Book your next haircut with us.",
            ),
            ServiceItem(id="colour", name="Colour", price=60.0),
        ],
        providers=[
            ProviderItem(id="anna", name="Anna", calendar_id="cal-anna"),
            ProviderItem(id="ben", name="Ben", calendar_id="cal-ben", service_ids=["colour"]),
        ],
        vocabulary=Vocabulary(
            business_name="Glow Salon",
            provider_label="Stylist",
            support_contact="+44 20 7946 0000",
        ),
        admin_contacts=["447700900999"],
        follow_up_delay_minutes=60 * 24 * 21,
    )


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def appointments():
    return FakeAppointmentStore()


@pytest.fixture
def leads():
    return FakeLeadStore()


@pytest.fixture
def recorder(leads, appointments):
    return LeadRecorder(leads=leads, appointments=appointments)


@pytest.fixture
def sessions():
    """Session manager running on its in-memory fallback."""
    with patch("app.core.session.manager.get_redis", return_value=None):
        yield SessionManager(ttl=3600, processing_timeout=120)


@pytest.fixture
def event_bus(recorder):
    bus = EventBus()
    bus.subscribe(recorder.on_booking_completed)
    return bus


@pytest.fixture
def saga(calendar, appointments, sessions, event_bus):
    return BookingSaga(
        gateway=calendar,
        appointments=appointments,
        sessions=sessions,
        events=event_bus,
    )


@pytest.fixture
def mock_claude():
    client = AsyncMock()
    client.generate.return_value = ClaudeResponse(
        content="We are open from 7am to 6pm every day.",
        model="claude-3-5-haiku-latest",
        input_tokens=120,
        output_tokens=14,
        latency_ms=210.0,
    )
    return client


@pytest.fixture
def responses(mock_claude):
    return ResponseGenerator(claude_client=mock_claude)


@pytest.fixture
def flow(calendar, saga, responses, recorder):
    return ConversationFlow(calendar, saga, responses=responses, recorder=recorder)


@pytest.fixture
def calendar_down():
    return UpstreamUnavailable("calendar timeout")
