"""
Conversation Flow Manager.

State machine for the booking conversation. Each inbound message is
resolved against the options last shown to the customer, moves the
session at most one step, and yields the presentations for the step it
lands on.
"""

import logging
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from app.core.dialogue.presentation import (
    Delivery,
    Presentation,
    TextPresentation,
    presented_options,
)
from app.core.dialogue.responses import (
    CANCEL_CONFIRM,
    CANCEL_KEEP,
    CHANGE_CONSENT,
    CONFIRM_BOOKING,
    CONTROL_BACK,
    CONTROL_HOME,
    CONTROL_RESTART,
    MENU_BOOK,
    MENU_CANCEL,
    MENU_QUESTION,
    MENU_RESCHEDULE,
    SERVICE_MORE,
    SERVICE_PREV,
    SLOT_MORE,
    SLOT_PREV,
    ResponseGenerator,
    get_response_generator,
)
from app.core.errors import PersistenceFailure, UpstreamUnavailable
from app.core.leads.recorder import LeadRecorder
from app.core.scheduling.calendar_client import AvailabilityGateway
from app.core.scheduling.saga import BookingSaga, SagaOutcome, SagaState
from app.core.scheduling.slots import (
    available_slots,
    bookable_days,
    compute_slots,
    day_bounds,
    format_day_label,
    format_time_label,
)
from app.core.session.models import Consent, SessionData
from app.core.session.state import (
    DialogueStep,
    can_transition,
    previous_booking_step,
)
from app.core.tenant import TenantConfig

logger = logging.getLogger(__name__)


# Control words accepted as free text at every step
CONTROL_WORDS = {
    CONTROL_HOME: CONTROL_HOME,
    "menu": CONTROL_HOME,
    "main menu": CONTROL_HOME,
    CONTROL_RESTART: CONTROL_RESTART,
    "start over": CONTROL_RESTART,
    CONTROL_BACK: CONTROL_BACK,
    "go back": CONTROL_BACK,
}

# Inbound event types
EVENT_SELECTION = "selection"
EVENT_FREE_TEXT = "free_text"

STOP_WORDS = {"stop", "unsubscribe"}
START_WORDS = {"start", "subscribe"}

MIN_NAME_LENGTH = 2

# Draft field owned by the step that captures it
STEP_FIELD = {
    DialogueStep.SELECT_SERVICE: "service_id",
    DialogueStep.SELECT_PROVIDER: "provider_id",
    DialogueStep.SELECT_DATE: "date",
    DialogueStep.SELECT_TIME: "time_slot",
    DialogueStep.CAPTURE_NAME: "customer_name",
    DialogueStep.CAPTURE_CONSENT: "consent",
}


@dataclass
class FlowResult:
    """Outcome of handling one inbound message."""

    presentations: list[Presentation] = field(default_factory=list)
    deliveries: list[Delivery] = field(default_factory=list)
    save_session: bool = True


def _restore(session: SessionData, saved: str) -> None:
    """Roll the session object back to a serialized copy."""
    original = SessionData.from_json(saved)
    for f in fields(SessionData):
        setattr(session, f.name, getattr(original, f.name))


class ConversationFlow:
    """
    State machine manager for booking conversations.

    Determines the next step from:
    - Current step
    - The option (or control word) the customer picked
    - Calendar availability
    """

    def __init__(
        self,
        gateway: AvailabilityGateway,
        saga: BookingSaga,
        responses: Optional[ResponseGenerator] = None,
        recorder: Optional[LeadRecorder] = None,
    ):
        """Initialize flow manager.

        Args:
            gateway: Calendar gateway used while browsing
            saga: Booking saga used at confirmation and cancellation
            responses: Presentation builder (uses singleton if not provided)
            recorder: Lead recorder for consent lookups and STOP/START
        """
        self._gateway = gateway
        self._saga = saga
        self._responses = responses or get_response_generator()
        self._recorder = recorder or LeadRecorder()

    async def handle(
        self,
        session: SessionData,
        tenant: TenantConfig,
        text: str,
        now: Optional[datetime] = None,
        is_new: bool = False,
        kind: str = EVENT_FREE_TEXT,
    ) -> FlowResult:
        """Process one inbound message.

        If the calendar is unreachable the session is rolled back to what
        it was before the message and a retry prompt is returned.

        Args:
            session: Conversation session (mutated in place)
            tenant: Tenant configuration
            text: Option id or free text
            now: Current time
            is_new: Session was created by this message
            kind: EVENT_SELECTION for a tapped option, EVENT_FREE_TEXT otherwise

        Returns:
            FlowResult with presentations for the customer
        """
        now = now or datetime.now(timezone.utc)
        text = (text or "").strip()
        saved = session.to_json()

        try:
            return await self._dispatch(session, tenant, text, now, is_new, kind)
        except UpstreamUnavailable as e:
            logger.warning(
                f"Calendar unavailable for {tenant.tenant_id}:{session.customer_id} "
                f"at {session.current_step.value}: {e}"
            )
            _restore(session, saved)
            return FlowResult(presentations=[self._responses.try_again_later()])

    async def _dispatch(
        self,
        session: SessionData,
        tenant: TenantConfig,
        text: str,
        now: datetime,
        is_new: bool,
        kind: str,
    ) -> FlowResult:
        lowered = text.lower()

        if lowered in STOP_WORDS or lowered in START_WORDS:
            return await self._handle_consent_command(session, tenant, lowered, now)

        option = session.find_option(text)
        control = option.id if option and option.id in CONTROL_WORDS else CONTROL_WORDS.get(lowered)
        if control:
            return await self._handle_control(session, tenant, control, now)

        # A tapped option that was never offered here is never read as text
        if kind == EVENT_SELECTION and option is None:
            return await self._invalid(session, tenant, now)

        handlers = {
            DialogueStep.HOME: self._handle_home,
            DialogueStep.SELECT_SERVICE: self._handle_service,
            DialogueStep.SELECT_PROVIDER: self._handle_provider,
            DialogueStep.SELECT_DATE: self._handle_date,
            DialogueStep.SELECT_TIME: self._handle_time,
            DialogueStep.CAPTURE_NAME: self._handle_name,
            DialogueStep.CAPTURE_CONSENT: self._handle_consent,
            DialogueStep.CONFIRM: self._handle_confirm,
            DialogueStep.CANCEL_SELECT: self._handle_cancel_select,
            DialogueStep.CANCEL_CONFIRM: self._handle_cancel_confirm,
            DialogueStep.RESCHEDULE_SELECT: self._handle_reschedule_select,
        }

        if is_new and session.current_step == DialogueStep.HOME and option is None:
            return self._render(session, [self._responses.home_menu(tenant)])

        return await handlers[session.current_step](session, tenant, text, option, now)

    # === Helpers ===

    def _render(
        self,
        session: SessionData,
        presentations: list[Presentation],
        keep_options: bool = False,
    ) -> FlowResult:
        """Remember the options shown so the next reply can be resolved."""
        if not keep_options:
            session.presented_options = []
            for presentation in presentations:
                shown = presented_options(presentation)
                if shown:
                    session.presented_options = shown
        return FlowResult(presentations=presentations)

    def _advance(self, session: SessionData, to_step: DialogueStep, **draft_updates) -> None:
        """Move forward one step, snapshotting the draft for "back"."""
        if not can_transition(session.current_step, to_step):
            logger.warning(
                f"Unexpected transition {session.current_step.value} -> {to_step.value} "
                f"for {session.customer_id}"
            )
        session.snapshot()
        for name, value in draft_updates.items():
            setattr(session.draft, name, value)
        session.current_step = to_step

    async def _invalid(self, session: SessionData, tenant: TenantConfig, now: datetime) -> FlowResult:
        """Re-present the current step without changing anything."""
        presentations = await self._present_step(session, tenant, now)
        return self._render(
            session,
            [TextPresentation(body=self._responses.invalid_choice()), *presentations],
        )

    async def _present_step(
        self,
        session: SessionData,
        tenant: TenantConfig,
        now: datetime,
        intro: Optional[str] = None,
    ) -> list[Presentation]:
        """Build the presentation for the session's current step."""
        responses = self._responses
        step = session.current_step
        draft = session.draft

        if step == DialogueStep.HOME:
            return [responses.home_menu(tenant)]

        if step == DialogueStep.SELECT_SERVICE:
            size = tenant.services_per_page
            start = session.service_page * size
            page = tenant.services[start:start + size]
            has_more = start + size < len(tenant.services)
            return [responses.service_menu(tenant, page, session.service_page, has_more)]

        if step == DialogueStep.SELECT_PROVIDER:
            return [responses.provider_menu(tenant, tenant.providers_for(draft.service_id))]

        if step == DialogueStep.SELECT_DATE:
            days = await self._bookable_days(tenant, draft.provider_id, now)
            menu = responses.date_menu(tenant, days) if days else responses.no_dates(tenant)
            if intro:
                menu.prompt = f"{intro}\n\n{menu.prompt}"
            return [menu]

        if step == DialogueStep.SELECT_TIME:
            slot_page = await self._slot_page(tenant, draft.provider_id, draft.date, session.slot_page, now)
            return [responses.time_menu(tenant, draft.date, slot_page, intro=intro)]

        if step == DialogueStep.CAPTURE_NAME:
            return [responses.ask_name(tenant)]

        if step == DialogueStep.CAPTURE_CONSENT:
            return [responses.consent_menu(tenant)]

        if step == DialogueStep.CONFIRM:
            return [
                responses.confirmation(
                    tenant,
                    draft,
                    tenant.get_service(draft.service_id),
                    tenant.get_provider(draft.provider_id),
                    replaces=self._replaces(session),
                )
            ]

        if step == DialogueStep.CANCEL_SELECT:
            return [responses.cancel_menu(tenant, session.booking_choices)]

        if step == DialogueStep.RESCHEDULE_SELECT:
            return [responses.reschedule_menu(tenant, session.booking_choices)]

        if step == DialogueStep.CANCEL_CONFIRM:
            choice = self._selected_choice(session)
            if choice is None:
                return [responses.home_menu(tenant)]
            return [responses.cancel_confirm(tenant, choice)]

        return [responses.home_menu(tenant)]

    async def _busy(self, tenant: TenantConfig, provider_id: str, start: datetime, end: datetime):
        provider = tenant.get_provider(provider_id)
        return await self._gateway.list_busy(provider.calendar_id, start, end)

    async def _bookable_days(self, tenant: TenantConfig, provider_id: str, now: datetime) -> list[date]:
        today = now.astimezone(tenant.tz).date()
        range_start, _ = day_bounds(today, tenant.tz)
        _, range_end = day_bounds(today + timedelta(days=tenant.booking_horizon_days - 1), tenant.tz)
        busy = await self._busy(tenant, provider_id, range_start, range_end)

        return bookable_days(
            now=now,
            business_hours=tenant.business_hours,
            busy_intervals=busy,
            slot_duration=tenant.slot_duration,
            min_lead_time=tenant.min_lead_time,
            count=tenant.booking_days_shown,
            horizon_days=tenant.booking_horizon_days,
            tz=tenant.tz,
        )

    async def _slot_page(self, tenant: TenantConfig, provider_id: str, day: date, page: int, now: datetime):
        range_start, range_end = day_bounds(day, tenant.tz)
        busy = await self._busy(tenant, provider_id, range_start, range_end)

        return compute_slots(
            day=day,
            business_hours=tenant.business_hours,
            busy_intervals=busy,
            slot_duration=tenant.slot_duration,
            min_lead_time=tenant.min_lead_time,
            now=now,
            page=page,
            page_size=tenant.slots_per_page,
            tz=tenant.tz,
        )

    @staticmethod
    def _selected_choice(session: SessionData) -> Optional[dict]:
        for choice in session.booking_choices:
            if choice.get("selected"):
                return choice
        return None

    @staticmethod
    def _replaces(session: SessionData) -> Optional[str]:
        return session.reschedule_from["label"] if session.reschedule_from else None

    # === Global commands ===

    async def _handle_control(
        self,
        session: SessionData,
        tenant: TenantConfig,
        control: str,
        now: datetime,
    ) -> FlowResult:
        if control == CONTROL_HOME:
            session.reset(DialogueStep.HOME)
            return self._render(session, [self._responses.home_menu(tenant)])

        if control == CONTROL_RESTART:
            session.reset(DialogueStep.SELECT_SERVICE)
            return self._render(session, await self._present_step(session, tenant, now))

        # Back: one-step snapshot first, then the previous booking step
        if not session.restore_snapshot():
            previous = previous_booking_step(session.current_step)
            if session.current_step == DialogueStep.CANCEL_CONFIRM:
                previous = DialogueStep.CANCEL_SELECT
            session.current_step = previous or DialogueStep.HOME
            if session.current_step == DialogueStep.SELECT_PROVIDER and len(
                tenant.providers_for(session.draft.service_id)
            ) <= 1:
                session.current_step = DialogueStep.SELECT_SERVICE

        if session.current_step == DialogueStep.HOME:
            session.reset(DialogueStep.HOME)
        elif session.current_step in (DialogueStep.CANCEL_SELECT, DialogueStep.RESCHEDULE_SELECT):
            for choice in session.booking_choices:
                choice["selected"] = False
            session.reschedule_from = None

        session.slot_page = 0
        if session.current_step == DialogueStep.SELECT_TIME:
            return await self._show_times(session, tenant, now)
        return self._render(session, await self._present_step(session, tenant, now))

    async def _handle_consent_command(
        self,
        session: SessionData,
        tenant: TenantConfig,
        word: str,
        now: datetime,
    ) -> FlowResult:
        """STOP / START update communication consent from any step."""
        if word in STOP_WORDS:
            consent = Consent(consented_at=now)
            presentation = self._responses.unsubscribed()
        else:
            consent = Consent(appointment_reminders=True, birthday_messages=True, consented_at=now)
            presentation = self._responses.resubscribed()

        await self._recorder.record_consent(tenant, session.customer_id, consent)
        if session.draft.consent is not None:
            session.draft.consent = consent

        logger.info(f"Consent command '{word}' from {tenant.tenant_id}:{session.customer_id}")
        return self._render(session, [presentation], keep_options=True)

    # === Steps ===

    async def _handle_home(self, session, tenant, text, option, now) -> FlowResult:
        if option and option.id == MENU_BOOK:
            session.reset(DialogueStep.HOME)
            self._advance(session, DialogueStep.SELECT_SERVICE)
            return self._render(session, await self._present_step(session, tenant, now))

        if option and option.id == MENU_CANCEL:
            return await self._start_cancellation(session, tenant, now)

        if option and option.id == MENU_RESCHEDULE:
            return await self._start_reschedule(session, tenant, now)

        if option and option.id == MENU_QUESTION:
            return self._render(
                session, [self._responses.ask_question_prompt(tenant)], keep_options=True
            )

        if not text:
            return self._render(session, [self._responses.home_menu(tenant)])

        answer = await self._responses.answer_question(tenant, text)
        return self._render(session, [answer, self._responses.home_menu(tenant)])

    async def _handle_service(self, session, tenant, text, option, now) -> FlowResult:
        if option is None:
            return await self._invalid(session, tenant, now)

        if option.id in (SERVICE_MORE, SERVICE_PREV):
            step = 1 if option.id == SERVICE_MORE else -1
            last_page = max((len(tenant.services) - 1) // tenant.services_per_page, 0)
            session.service_page = min(max(session.service_page + step, 0), last_page)
            return self._render(session, await self._present_step(session, tenant, now))

        service = tenant.get_service(option.id)
        if service is None:
            return await self._invalid(session, tenant, now)

        providers = tenant.providers_for(service.id)
        if not providers:
            logger.error(f"No provider offers service {service.id} for tenant {tenant.tenant_id}")
            return await self._invalid(session, tenant, now)

        if len(providers) == 1:
            self._advance(
                session,
                DialogueStep.SELECT_DATE,
                service_id=service.id,
                provider_id=providers[0].id,
                date=None,
                time_slot=None,
            )
        else:
            self._advance(
                session,
                DialogueStep.SELECT_PROVIDER,
                service_id=service.id,
                provider_id=None,
                date=None,
                time_slot=None,
            )
        return self._render(session, await self._present_step(session, tenant, now))

    async def _handle_provider(self, session, tenant, text, option, now) -> FlowResult:
        providers = {p.id for p in tenant.providers_for(session.draft.service_id)}
        if option is None or option.id not in providers:
            return await self._invalid(session, tenant, now)

        self._advance(
            session,
            DialogueStep.SELECT_DATE,
            provider_id=option.id,
            date=None,
            time_slot=None,
        )
        return self._render(session, await self._present_step(session, tenant, now))

    async def _handle_date(self, session, tenant, text, option, now) -> FlowResult:
        if option is None or not option.id.startswith("date_"):
            return await self._invalid(session, tenant, now)

        try:
            chosen = date.fromisoformat(option.id[len("date_"):])
        except ValueError:
            return await self._invalid(session, tenant, now)

        self._advance(session, DialogueStep.SELECT_TIME, date=chosen, time_slot=None)
        session.slot_page = 0
        return await self._show_times(session, tenant, now)

    async def _show_times(
        self,
        session: SessionData,
        tenant: TenantConfig,
        now: datetime,
        intro: Optional[str] = None,
    ) -> FlowResult:
        """Present the time menu, or fall back to date selection if the day is full."""
        draft = session.draft
        slot_page = await self._slot_page(tenant, draft.provider_id, draft.date, session.slot_page, now)
        if not slot_page.slots and session.slot_page > 0:
            session.slot_page = 0
            slot_page = await self._slot_page(tenant, draft.provider_id, draft.date, 0, now)

        if slot_page.total == 0:
            session.current_step = DialogueStep.SELECT_DATE
            session.slot_page = 0
            session.previous_step = None
            session.previous_draft = None
            full = f"Sorry, {format_day_label(draft.date)} is now fully booked."
            draft.date = None
            draft.time_slot = None
            return self._render(session, await self._present_step(session, tenant, now, intro=full))

        return self._render(session, [self._responses.time_menu(tenant, draft.date, slot_page, intro=intro)])

    async def _handle_time(self, session, tenant, text, option, now) -> FlowResult:
        if option is None:
            return await self._invalid(session, tenant, now)

        if option.id in (SLOT_MORE, SLOT_PREV):
            step = 1 if option.id == SLOT_MORE else -1
            session.slot_page = max(session.slot_page + step, 0)
            return await self._show_times(session, tenant, now)

        draft = session.draft
        range_start, range_end = day_bounds(draft.date, tenant.tz)
        busy = await self._busy(tenant, draft.provider_id, range_start, range_end)
        free = available_slots(
            day=draft.date,
            business_hours=tenant.business_hours,
            busy_intervals=busy,
            slot_duration=tenant.slot_duration,
            min_lead_time=tenant.min_lead_time,
            now=now,
            tz=tenant.tz,
        )
        slot = next((s for s in free if s.slot_id == option.id), None)

        if slot is None:
            session.slot_page = 0
            return await self._show_times(session, tenant, now, intro=self._responses.slot_taken_intro())

        if draft.customer_name:
            self._advance(session, DialogueStep.CAPTURE_CONSENT, time_slot=slot)
            return await self._after_name(session, tenant, now)

        self._advance(session, DialogueStep.CAPTURE_NAME, time_slot=slot)
        return self._render(session, await self._present_step(session, tenant, now))

    async def _handle_name(self, session, tenant, text, option, now) -> FlowResult:
        name = " ".join(text.split())
        if len(name) < MIN_NAME_LENGTH or name.isdigit():
            return self._render(session, [self._responses.ask_name(tenant, retry=True)])

        self._advance(session, DialogueStep.CAPTURE_CONSENT, customer_name=name)
        return await self._after_name(session, tenant, now)

    async def _after_name(self, session, tenant, now) -> FlowResult:
        """Reuse a returning customer's consent, otherwise ask for it."""
        draft = session.draft
        previous = await self._recorder.previous_consent(tenant, draft.customer_contact or session.customer_id)

        if previous is None:
            return self._render(session, [self._responses.consent_menu(tenant)])

        draft.consent = previous
        session.current_step = DialogueStep.CONFIRM
        return self._render(
            session,
            [
                self._responses.confirmation(
                    tenant,
                    draft,
                    tenant.get_service(draft.service_id),
                    tenant.get_provider(draft.provider_id),
                    reused_consent=True,
                    replaces=self._replaces(session),
                )
            ],
        )

    async def _handle_consent(self, session, tenant, text, option, now) -> FlowResult:
        if option is None:
            return await self._invalid(session, tenant, now)

        try:
            consent = Consent.from_preset(option.id, now)
        except ValueError:
            return await self._invalid(session, tenant, now)

        self._advance(session, DialogueStep.CONFIRM, consent=consent)
        return self._render(session, await self._present_step(session, tenant, now))

    async def _handle_confirm(self, session, tenant, text, option, now) -> FlowResult:
        if option is None:
            return await self._invalid(session, tenant, now)

        if option.id == CHANGE_CONSENT:
            self._advance(session, DialogueStep.CAPTURE_CONSENT)
            return self._render(session, await self._present_step(session, tenant, now))

        if option.id != CONFIRM_BOOKING:
            return await self._invalid(session, tenant, now)

        moving = session.reschedule_from
        outcome = await self._saga.commit(session, tenant, now)
        responses = self._responses
        draft = outcome.draft

        if outcome.state == SagaState.DONE:
            service = tenant.get_service(draft.service_id)
            provider = tenant.get_provider(draft.provider_id)
            if moving:
                removed = await self._release_moved_booking(tenant, moving, outcome)
                confirmed = responses.rescheduled(
                    tenant, draft, service, provider, moving["label"], previous_removed=removed
                )
            else:
                confirmed = responses.booking_confirmed(tenant, draft, service, provider)
            result = self._render(session, [confirmed])
            result.deliveries = outcome.deliveries
            return result

        if outcome.state == SagaState.REJECTED_DUPLICATE:
            return FlowResult(presentations=[responses.still_processing()], save_session=False)

        if outcome.state == SagaState.FAILED_VALIDATION:
            missing = set(getattr(outcome.error, "missing", []))
            for step, field_name in STEP_FIELD.items():
                if field_name in missing:
                    session.current_step = step
                    break
            else:
                session.current_step = DialogueStep.SELECT_SERVICE
            return self._render(session, await self._present_step(session, tenant, now))

        if outcome.state == SagaState.FAILED_RESERVE and outcome.is_retryable:
            return self._render(session, [responses.try_again_later()], keep_options=True)

        if outcome.state == SagaState.FAILED_RESERVE:
            session.current_step = DialogueStep.SELECT_TIME
            session.draft.time_slot = None
            session.slot_page = 0
            session.previous_step = None
            session.previous_draft = None
            return await self._show_times(session, tenant, now, intro=responses.slot_taken_intro())

        # FAILED_PERSIST: nothing was booked
        session.reset(DialogueStep.HOME)
        return self._render(session, [responses.booking_failed(tenant)])

    # === Cancellation ===

    async def _list_bookings(self, session: SessionData, tenant: TenantConfig, now: datetime) -> list[dict]:
        """The customer's upcoming bookings across every provider calendar, soonest first."""
        contact = session.draft.customer_contact or session.customer_id
        range_end = now + timedelta(days=tenant.booking_horizon_days)

        choices = []
        seen_calendars = set()
        for provider in tenant.providers:
            if provider.calendar_id in seen_calendars:
                continue
            seen_calendars.add(provider.calendar_id)

            bookings = await self._gateway.find_by_customer(provider.calendar_id, contact, now, range_end)
            for booking in bookings:
                if booking.start <= now:
                    continue
                local = booking.start.astimezone(tenant.tz)
                choices.append(
                    {
                        "event_id": booking.event_id,
                        "calendar_id": booking.calendar_id,
                        "start": booking.start.astimezone(timezone.utc).isoformat(),
                        "label": f"{local:%a %d %b} {format_time_label(local)}",
                        "selected": False,
                    }
                )

        choices.sort(key=lambda c: c["start"])
        return choices

    async def _start_cancellation(self, session: SessionData, tenant: TenantConfig, now: datetime) -> FlowResult:
        choices = await self._list_bookings(session, tenant, now)
        if not choices:
            return self._render(session, [self._responses.no_bookings(tenant)])

        self._advance(session, DialogueStep.CANCEL_SELECT)
        session.booking_choices = choices
        return self._render(session, await self._present_step(session, tenant, now))

    async def _handle_cancel_select(self, session, tenant, text, option, now) -> FlowResult:
        if option is None or not option.id.startswith("cancel_"):
            return await self._invalid(session, tenant, now)

        event_id = option.id[len("cancel_"):]
        if not any(c["event_id"] == event_id for c in session.booking_choices):
            return await self._invalid(session, tenant, now)

        self._advance(session, DialogueStep.CANCEL_CONFIRM)
        for choice in session.booking_choices:
            choice["selected"] = choice["event_id"] == event_id
        return self._render(session, await self._present_step(session, tenant, now))

    async def _handle_cancel_confirm(self, session, tenant, text, option, now) -> FlowResult:
        choice = self._selected_choice(session)
        if option is None or option.id not in (CANCEL_CONFIRM, CANCEL_KEEP) or choice is None:
            return await self._invalid(session, tenant, now)

        if option.id == CANCEL_KEEP:
            session.reset(DialogueStep.HOME)
            return self._render(
                session,
                [self._responses.home_menu(tenant, greeting="No problem, your booking is kept.")],
            )

        try:
            await self._saga.cancel(tenant, choice["calendar_id"], choice["event_id"])
        except PersistenceFailure as e:
            logger.error(f"Cancellation of {choice['event_id']} incomplete, will retry: {e}")
            return self._render(session, [self._responses.try_again_later()], keep_options=True)

        session.reset(DialogueStep.HOME)
        return self._render(session, [self._responses.cancelled(tenant)])


    # === Rescheduling ===

    async def _start_reschedule(self, session: SessionData, tenant: TenantConfig, now: datetime) -> FlowResult:
        choices = await self._list_bookings(session, tenant, now)
        if not choices:
            return self._render(session, [self._responses.no_bookings(tenant)])

        self._advance(session, DialogueStep.RESCHEDULE_SELECT)
        session.booking_choices = choices
        return self._render(session, await self._present_step(session, tenant, now))

    async def _handle_reschedule_select(self, session, tenant, text, option, now) -> FlowResult:
        """Pick the booking to move, then rebook it through the booking steps.

        Service, provider and name come from the appointment record when it
        is still valid for the tenant. Otherwise the customer starts from
        service selection. The old booking is only released after the new
        one is committed.
        """
        if option is None or not option.id.startswith("reschedule_"):
            return await self._invalid(session, tenant, now)

        event_id = option.id[len("reschedule_"):]
        choice = next((c for c in session.booking_choices if c["event_id"] == event_id), None)
        if choice is None:
            return await self._invalid(session, tenant, now)

        for c in session.booking_choices:
            c["selected"] = c is choice
        record = await self._saga.find_booking(tenant, event_id)

        provider = tenant.get_provider(record.provider_id) if record else None
        offered = (
            provider is not None
            and tenant.get_service(record.service_id) is not None
            and provider.offers(record.service_id)
        )
        if offered:
            self._advance(
                session,
                DialogueStep.SELECT_DATE,
                service_id=record.service_id,
                provider_id=record.provider_id,
                customer_name=record.customer_name or None,
                date=None,
                time_slot=None,
            )
        else:
            self._advance(session, DialogueStep.SELECT_SERVICE)

        session.reschedule_from = {
            "event_id": choice["event_id"],
            "calendar_id": choice["calendar_id"],
            "label": choice["label"],
        }
        logger.info(f"Rescheduling {event_id} for {tenant.tenant_id}:{session.customer_id}")
        return self._render(session, await self._present_step(session, tenant, now))

    async def _release_moved_booking(self, tenant: TenantConfig, moving: dict, outcome: SagaOutcome) -> bool:
        """Cancel the booking that was replaced. False if it is still in place."""
        if outcome.appointment and outcome.appointment.external_event_id == moving["event_id"]:
            return True

        try:
            await self._saga.cancel(tenant, moving["calendar_id"], moving["event_id"])
        except (UpstreamUnavailable, PersistenceFailure) as e:
            logger.error(
                f"Rescheduled booking for {tenant.tenant_id} kept old event {moving['event_id']}: {e}"
            )
            return False
        return True
