"""Tests for Conversation Flow Manager."""

import pytest
import pytest_asyncio
from datetime import date, datetime, timedelta, timezone

from app.core.dialogue.presentation import (
    ConfirmationPresentation,
    OptionsPresentation,
    TextPresentation,
)
from app.core.dialogue.flow import EVENT_SELECTION
from app.core.errors import PersistenceFailure, UpstreamUnavailable
from app.core.session.models import Consent
from app.core.session.state import DialogueStep
from app.infra.repositories import AppointmentRecord, LeadRecord


CONTACT = "447700900123"
TUESDAY = date(2025, 7, 22)


def at(hour: int, minute: int = 0, day: date = TUESDAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def option_ids(presentation) -> list[str]:
    return [o.id for o in presentation.options]


def presented_ids(session) -> list[str]:
    return [o.id for o in session.presented_options]


class TestConversationFlow:
    """Test ConversationFlow state machine."""

    @pytest_asyncio.fixture
    async def session(self, sessions):
        """New conversation at the home step."""
        return await sessions.get_or_create("glow-salon", CONTACT)

    @pytest.fixture
    def say(self, flow, tenant, now):
        """Send one or more messages, returning the last result."""

        async def _say(session, *texts):
            result = None
            for text in texts:
                result = await flow.handle(session, tenant, text, now)
            return result

        return _say

    # === Home ===

    @pytest.mark.asyncio
    async def test_new_session_shows_home_menu(self, flow, session, tenant, now):
        result = await flow.handle(session, tenant, "hi", now, is_new=True)

        assert session.current_step == DialogueStep.HOME
        menu = result.presentations[0]
        assert menu.prompt.startswith("Welcome to Glow Salon")
        home_ids = ["menu_book", "menu_cancel", "menu_reschedule", "menu_question"]
        assert option_ids(menu) == home_ids
        assert presented_ids(session) == home_ids

    @pytest.mark.asyncio
    async def test_free_text_at_home_answered(self, session, say, mock_claude):
        result = await say(session, "When are you open?")

        assert result.presentations[0].body == "We are open from 7am to 6pm every day."
        assert isinstance(result.presentations[1], OptionsPresentation)
        assert session.current_step == DialogueStep.HOME
        mock_claude.generate.assert_awaited_once()
        assert "Glow Salon" in mock_claude.generate.call_args.kwargs["system_prompt"]

    @pytest.mark.asyncio
    async def test_ask_question_keeps_menu_options(self, session, say):
        await say(session, "hello")

        result = await say(session, "menu_question")

        assert isinstance(result.presentations[0], TextPresentation)
        assert "menu_book" in presented_ids(session)

    @pytest.mark.asyncio
    async def test_unoffered_selection_at_home_not_answered(self, flow, session, tenant, now, mock_claude):
        await flow.handle(session, tenant, "hi", now, is_new=True)

        result = await flow.handle(session, tenant, "consent_confirm_all", now, kind=EVENT_SELECTION)

        assert session.current_step == DialogueStep.HOME
        assert result.presentations[0].body.startswith("Sorry, I didn't get that")
        mock_claude.generate.assert_not_awaited()

    # === Happy path ===

    @pytest.mark.asyncio
    async def test_full_booking(self, session, say, calendar, appointments, leads):
        await say(session, "hi")

        result = await say(session, "menu_book")
        assert session.current_step == DialogueStep.SELECT_SERVICE
        assert option_ids(result.presentations[0]) == ["haircut", "colour", "home"]

        # Single provider for haircut skips provider selection
        result = await say(session, "Haircut")
        assert session.current_step == DialogueStep.SELECT_DATE
        assert session.draft.provider_id == "anna"
        assert option_ids(result.presentations[0])[:2] == ["date_2025-07-21", "date_2025-07-22"]

        result = await say(session, "date_2025-07-22")
        assert session.current_step == DialogueStep.SELECT_TIME
        times = result.presentations[0]
        assert times.options[0].id == "slot_202507220700"
        assert times.options[0].label == "7:00 AM"

        await say(session, "slot_202507221000")
        assert session.current_step == DialogueStep.CAPTURE_NAME

        result = await say(session, "  Jane   Doe ")
        assert session.current_step == DialogueStep.CAPTURE_CONSENT
        assert session.draft.customer_name == "Jane Doe"
        assert option_ids(result.presentations[0]) == [
            "consent_confirm_all",
            "consent_reminders_only",
            "consent_none",
        ]

        result = await say(session, "consent_reminders_only")
        assert session.current_step == DialogueStep.CONFIRM
        confirmation = result.presentations[0]
        assert isinstance(confirmation, ConfirmationPresentation)
        assert "Stylist: Anna" in confirmation.summary
        assert "Time: 10:00 AM" in confirmation.summary

        result = await say(session, "confirm_booking")
        assert result.presentations[0].prompt.startswith("Booking confirmed!")
        assert session.current_step == DialogueStep.HOME
        assert len(appointments.rows) == 1
        record = next(iter(appointments.rows.values()))
        assert record.start == at(10)
        assert record.customer_name == "Jane Doe"
        assert leads.rows[("glow-salon", CONTACT)].activity_counts["appointment_booked"] == 1

    @pytest.mark.asyncio
    async def test_provider_selection(self, session, say):
        await say(session, "hi", "menu_book")

        result = await say(session, "colour")
        assert session.current_step == DialogueStep.SELECT_PROVIDER
        assert option_ids(result.presentations[0]) == ["anna", "ben", "back", "home"]

        await say(session, "Ben")
        assert session.current_step == DialogueStep.SELECT_DATE
        assert session.draft.provider_id == "ben"

    @pytest.mark.asyncio
    async def test_unrecognised_text_at_provider_selection(self, session, say):
        """Step unchanged and the same provider options re-presented."""
        await say(session, "hi", "menu_book", "colour")

        result = await say(session, "whoever is free")

        assert session.current_step == DialogueStep.SELECT_PROVIDER
        assert session.draft.provider_id is None
        assert result.presentations[0].body.startswith("Sorry, I didn't get that")
        assert option_ids(result.presentations[1]) == ["anna", "ben", "back", "home"]
        assert presented_ids(session) == ["anna", "ben", "back", "home"]

    @pytest.mark.asyncio
    async def test_provider_must_offer_service(self, session, say):
        await say(session, "hi", "menu_book", "colour")
        session.draft.service_id = "haircut"

        await say(session, "ben")

        assert session.current_step == DialogueStep.SELECT_PROVIDER

    # === Control words ===

    @pytest.mark.asyncio
    async def test_back_restores_previous_step(self, session, say):
        await say(session, "hi", "menu_book", "haircut")

        await say(session, "back")

        assert session.current_step == DialogueStep.SELECT_SERVICE
        assert session.draft.service_id is None

    @pytest.mark.asyncio
    async def test_back_skips_single_provider_step(self, session, say):
        session.current_step = DialogueStep.SELECT_DATE
        session.draft.service_id = "haircut"
        session.draft.provider_id = "anna"

        await say(session, "go back")

        assert session.current_step == DialogueStep.SELECT_SERVICE

    @pytest.mark.asyncio
    async def test_menu_word_returns_home(self, session, say):
        await say(session, "hi", "menu_book", "haircut", "date_2025-07-22")

        result = await say(session, "Main Menu")

        assert session.current_step == DialogueStep.HOME
        assert session.draft.service_id is None
        assert session.draft.customer_contact == CONTACT
        assert option_ids(result.presentations[0])[0] == "menu_book"

    @pytest.mark.asyncio
    async def test_restart_clears_draft(self, session, say):
        await say(session, "hi", "menu_book", "haircut", "date_2025-07-22")

        await say(session, "start over")

        assert session.current_step == DialogueStep.SELECT_SERVICE
        assert session.draft.date is None
        assert session.draft.provider_id is None

    # === Dates and times ===

    @pytest.mark.asyncio
    async def test_slot_paging(self, session, say):
        await say(session, "hi", "menu_book", "haircut", "date_2025-07-22")

        result = await say(session, "slot_more")

        page = result.presentations[0]
        assert session.slot_page == 1
        assert page.options[0].id == "slot_202507221130"
        assert "slot_prev" in option_ids(page)

        result = await say(session, "slot_prev")
        assert result.presentations[0].options[0].id == "slot_202507220700"

    @pytest.mark.asyncio
    async def test_slot_taken_after_display(self, session, say, calendar):
        await say(session, "hi", "menu_book", "haircut", "date_2025-07-22")
        calendar.add_busy("cal-anna", at(10), at(10, 30))

        result = await say(session, "slot_202507221000")

        assert session.current_step == DialogueStep.SELECT_TIME
        times = result.presentations[0]
        assert times.prompt.startswith("Sorry, that time was just taken")
        assert "slot_202507221000" not in option_ids(times)

    @pytest.mark.asyncio
    async def test_day_filled_after_display(self, session, say, calendar):
        await say(session, "hi", "menu_book", "haircut")
        calendar.add_busy("cal-anna", at(0), at(0, day=TUESDAY + timedelta(days=1)))

        result = await say(session, "date_2025-07-22")

        assert session.current_step == DialogueStep.SELECT_DATE
        dates = result.presentations[0]
        assert dates.prompt.startswith("Sorry, Tuesday, 22 Jul 2025 is now fully booked.")
        assert "date_2025-07-22" not in option_ids(dates)

    @pytest.mark.asyncio
    async def test_calendar_down_rolls_back(self, session, say, calendar, calendar_down):
        await say(session, "hi", "menu_book", "haircut")
        shown = presented_ids(session)
        calendar.list_error = calendar_down

        result = await say(session, "date_2025-07-22")

        assert result.presentations[0].body.startswith("Our booking system is busy")
        assert session.current_step == DialogueStep.SELECT_DATE
        assert session.draft.date is None
        assert presented_ids(session) == shown

    @pytest.mark.asyncio
    async def test_back_after_day_filled_skips_stale_snapshot(self, session, say, calendar):
        await say(session, "hi", "menu_book", "haircut")
        calendar.add_busy("cal-anna", at(0), at(0, day=TUESDAY + timedelta(days=1)))
        await say(session, "date_2025-07-22")

        await say(session, "back")

        assert session.current_step == DialogueStep.SELECT_SERVICE

    # === Name and consent ===

    @pytest.mark.asyncio
    async def test_stale_selection_not_taken_as_name(self, flow, session, say, tenant, now):
        await say(session, "hi", "menu_book", "haircut", "date_2025-07-22", "slot_202507221000")

        result = await flow.handle(session, tenant, "slot_202507221000", now, kind=EVENT_SELECTION)

        assert session.current_step == DialogueStep.CAPTURE_NAME
        assert session.draft.customer_name is None
        assert result.presentations[0].body.startswith("Sorry, I didn't get that")

    @pytest.mark.asyncio
    async def test_invalid_name(self, session, say):
        await say(session, "hi", "menu_book", "haircut", "date_2025-07-22", "slot_202507221000")

        result = await say(session, "42")

        assert session.current_step == DialogueStep.CAPTURE_NAME
        assert result.presentations[0].body == "Please type your full name to continue."

    @pytest.mark.asyncio
    async def test_returning_customer_consent_reused(self, session, say, leads, now):
        leads.rows[("glow-salon", CONTACT)] = LeadRecord(
            tenant_id="glow-salon",
            contact=CONTACT,
            consent=Consent(appointment_reminders=True, consented_at=now).to_dict(),
        )
        await say(session, "hi", "menu_book", "haircut", "date_2025-07-22", "slot_202507221000")

        result = await say(session, "Jane")

        assert session.current_step == DialogueStep.CONFIRM
        assert session.draft.consent.appointment_reminders is True
        assert "previous message preference" in result.presentations[0].summary

        result = await say(session, "change_consent_preferences")
        assert session.current_step == DialogueStep.CAPTURE_CONSENT

    @pytest.mark.asyncio
    async def test_known_name_skips_name_step(self, session, say):
        await say(session, "hi", "menu_book", "haircut", "date_2025-07-22")
        session.draft.customer_name = "Jane"

        await say(session, "slot_202507221000")

        assert session.current_step == DialogueStep.CAPTURE_CONSENT

    @pytest.mark.asyncio
    async def test_stop_and_start(self, session, say, leads):
        await say(
            session, "hi", "menu_book", "haircut", "date_2025-07-22",
            "slot_202507221000", "Jane", "consent_confirm_all",
        )
        shown = presented_ids(session)

        result = await say(session, "STOP")

        assert result.presentations[0].body.startswith("You have been unsubscribed")
        assert session.current_step == DialogueStep.CONFIRM
        assert session.draft.consent.any_granted is False
        assert leads.rows[("glow-salon", CONTACT)].consent["appointment_reminders"] is False
        assert presented_ids(session) == shown

        await say(session, "start")
        assert session.draft.consent.birthday_messages is True

    # === Confirmation failures ===

    @pytest_asyncio.fixture
    async def confirming(self, session, say):
        await say(
            session, "hi", "menu_book", "haircut", "date_2025-07-22",
            "slot_202507221000", "Jane", "consent_none",
        )
        assert session.current_step == DialogueStep.CONFIRM
        return session

    @pytest.mark.asyncio
    async def test_confirm_slot_taken(self, confirming, say, calendar):
        calendar.add_busy("cal-anna", at(10), at(10, 30))

        result = await say(confirming, "confirm_booking")

        assert confirming.current_step == DialogueStep.SELECT_TIME
        assert confirming.draft.time_slot is None
        assert confirming.draft.customer_name == "Jane"
        assert result.presentations[0].prompt.startswith("Sorry, that time was just taken")

    @pytest.mark.asyncio
    async def test_back_after_slot_taken_at_confirm(self, confirming, say, calendar):
        calendar.add_busy("cal-anna", at(10), at(10, 30))
        await say(confirming, "confirm_booking")

        await say(confirming, "back")

        assert confirming.current_step == DialogueStep.SELECT_DATE
        assert confirming.draft.time_slot is None
        assert confirming.draft.consent is not None

    @pytest.mark.asyncio
    async def test_confirm_calendar_down(self, confirming, say, calendar, calendar_down):
        calendar.list_error = calendar_down

        result = await say(confirming, "confirm_booking")

        assert result.presentations[0].body.startswith("Our booking system is busy")
        assert confirming.current_step == DialogueStep.CONFIRM
        assert "confirm_booking" in presented_ids(confirming)

    @pytest.mark.asyncio
    async def test_confirm_persistence_failure(self, confirming, say, calendar, appointments):
        appointments.create_error = PersistenceFailure("db down")

        result = await say(confirming, "confirm_booking")

        assert confirming.current_step == DialogueStep.HOME
        assert "+44 20 7946 0000" in result.presentations[0].prompt
        assert calendar.events == {}
        assert appointments.rows == {}

    @pytest.mark.asyncio
    async def test_confirm_while_processing(self, confirming, say, sessions, calendar, now):
        await sessions.save(confirming)
        holder = await sessions.get("glow-salon", CONTACT)
        await sessions.begin_processing(holder, now)

        result = await say(confirming, "confirm_booking")

        assert result.save_session is False
        assert result.presentations[0].body.startswith("Your booking is being processed")
        assert calendar.created == []

    # === Cancellation ===

    @pytest.mark.asyncio
    async def test_cancel_booking(self, session, say, calendar):
        event_id = calendar.add_event("cal-anna", at(10), at(10, 30), CONTACT, "Haircut - Jane")
        await say(session, "hi")

        result = await say(session, "menu_cancel")
        assert session.current_step == DialogueStep.CANCEL_SELECT
        menu = result.presentations[0]
        assert menu.options[0].id == f"cancel_{event_id}"
        assert menu.options[0].label == "Tue 22 Jul 10:00 AM"

        result = await say(session, f"cancel_{event_id}")
        assert session.current_step == DialogueStep.CANCEL_CONFIRM
        assert "Tue 22 Jul 10:00 AM" in result.presentations[0].summary

        result = await say(session, "cancel_confirm_yes")
        assert session.current_step == DialogueStep.HOME
        assert result.presentations[0].prompt == "Your booking has been cancelled."
        assert calendar.events == {}

    @pytest.mark.asyncio
    async def test_cancel_lists_bookings_across_calendars(self, session, say, calendar, now):
        later = calendar.add_event("cal-ben", at(15), at(15, 30), CONTACT)
        sooner = calendar.add_event("cal-anna", at(9), at(9, 30), CONTACT)
        # Already started
        calendar.add_event("cal-anna", now - timedelta(minutes=20), now + timedelta(minutes=10), CONTACT)
        await say(session, "hi")

        result = await say(session, "menu_cancel")

        assert option_ids(result.presentations[0]) == [f"cancel_{sooner}", f"cancel_{later}", "home"]

    @pytest.mark.asyncio
    async def test_no_bookings(self, session, say):
        await say(session, "hi")

        result = await say(session, "menu_cancel")

        assert session.current_step == DialogueStep.HOME
        assert result.presentations[0].prompt == "You have no upcoming bookings with us."

    @pytest.mark.asyncio
    async def test_keep_booking(self, session, say, calendar):
        event_id = calendar.add_event("cal-anna", at(10), at(10, 30), CONTACT)

        result = await say(session, "hi", "menu_cancel", f"cancel_{event_id}", "cancel_keep")

        assert session.current_step == DialogueStep.HOME
        assert result.presentations[0].prompt == "No problem, your booking is kept."
        assert event_id in calendar.events

    @pytest.mark.asyncio
    async def test_back_from_cancel_confirm(self, session, say, calendar):
        event_id = calendar.add_event("cal-anna", at(10), at(10, 30), CONTACT)
        await say(session, "hi", "menu_cancel", f"cancel_{event_id}")

        await say(session, "back")

        assert session.current_step == DialogueStep.CANCEL_SELECT
        assert not any(c["selected"] for c in session.booking_choices)

    @pytest.mark.asyncio
    async def test_cancel_persistence_failure(self, session, say, calendar, appointments):
        event_id = calendar.add_event("cal-anna", at(10), at(10, 30), CONTACT)
        appointments.delete_error = PersistenceFailure("db down")
        await say(session, "hi", "menu_cancel", f"cancel_{event_id}")

        result = await say(session, "cancel_confirm_yes")

        assert session.current_step == DialogueStep.CANCEL_CONFIRM
        assert result.presentations[0].body.startswith("Our booking system is busy")
        assert "cancel_confirm_yes" in presented_ids(session)

    # === Rescheduling ===

    @pytest_asyncio.fixture
    async def booked(self, calendar, appointments, now):
        """Colour with Ben on Tuesday at 3pm, on record."""
        event_id = calendar.add_event("cal-ben", at(15), at(15, 30), CONTACT, "Colour - Jane")
        await appointments.create(
            AppointmentRecord(
                tenant_id="glow-salon",
                customer_name="Jane",
                contact=CONTACT,
                service_id="colour",
                provider_id="ben",
                calendar_id="cal-ben",
                date=TUESDAY,
                time_label="3:00 PM",
                start=at(15),
                end=at(15, 30),
                external_event_id=event_id,
                consent=Consent(appointment_reminders=True, consented_at=now).to_dict(),
            )
        )
        return event_id

    @pytest.mark.asyncio
    async def test_reschedule_booking(self, session, say, calendar, appointments, booked):
        await say(session, "hi")

        result = await say(session, "menu_reschedule")
        assert session.current_step == DialogueStep.RESCHEDULE_SELECT
        menu = result.presentations[0]
        assert option_ids(menu) == [f"reschedule_{booked}", "home"]
        assert menu.options[0].label == "Tue 22 Jul 3:00 PM"

        await say(session, f"reschedule_{booked}")
        assert session.current_step == DialogueStep.SELECT_DATE
        assert session.draft.service_id == "colour"
        assert session.draft.provider_id == "ben"
        assert session.draft.customer_name == "Jane"

        result = await say(session, "date_2025-07-22", "slot_202507221000")
        assert session.current_step == DialogueStep.CONFIRM
        assert "Replaces your booking on Tue 22 Jul 3:00 PM" in result.presentations[0].summary

        result = await say(session, "confirm_booking")

        body = result.presentations[0].prompt
        assert body.startswith("Booking moved!")
        assert "Your booking on Tue 22 Jul 3:00 PM has been cancelled." in body
        assert booked not in calendar.events
        assert booked not in appointments.rows
        assert [r.start for r in appointments.rows.values()] == [at(10)]
        assert session.current_step == DialogueStep.HOME
        assert session.reschedule_from is None

    @pytest.mark.asyncio
    async def test_reschedule_slot_taken_keeps_old_booking(self, session, say, calendar, appointments, booked):
        await say(
            session, "hi", "menu_reschedule", f"reschedule_{booked}",
            "date_2025-07-22", "slot_202507221000",
        )
        calendar.add_busy("cal-ben", at(10), at(10, 30))

        await say(session, "confirm_booking")

        assert session.current_step == DialogueStep.SELECT_TIME
        assert calendar.deleted == []
        assert booked in appointments.rows
        assert session.reschedule_from["event_id"] == booked

    @pytest.mark.asyncio
    async def test_reschedule_old_booking_not_cancelled(self, session, say, calendar, appointments, booked):
        await say(
            session, "hi", "menu_reschedule", f"reschedule_{booked}",
            "date_2025-07-22", "slot_202507221000",
        )
        calendar.delete_error = UpstreamUnavailable("calendar timeout")

        result = await say(session, "confirm_booking")

        body = result.presentations[0].prompt
        assert body.startswith("Booking moved!")
        assert "We could not cancel your booking on Tue 22 Jul 3:00 PM" in body
        assert "+44 20 7946 0000" in body
        assert len(appointments.rows) == 2
        assert session.current_step == DialogueStep.HOME

    @pytest.mark.asyncio
    async def test_reschedule_no_bookings(self, session, say):
        result = await say(session, "hi", "menu_reschedule")

        assert session.current_step == DialogueStep.HOME
        assert result.presentations[0].prompt == "You have no upcoming bookings with us."

    @pytest.mark.asyncio
    async def test_reschedule_booking_not_on_record(self, session, say, calendar):
        event_id = calendar.add_event("cal-anna", at(11), at(11, 30), CONTACT)

        await say(session, "hi", "menu_reschedule", f"reschedule_{event_id}")

        assert session.current_step == DialogueStep.SELECT_SERVICE
        assert session.reschedule_from["event_id"] == event_id

    @pytest.mark.asyncio
    async def test_back_to_reschedule_choices(self, session, say, booked):
        await say(session, "hi", "menu_reschedule", f"reschedule_{booked}")

        result = await say(session, "back")

        assert session.current_step == DialogueStep.RESCHEDULE_SELECT
        assert session.reschedule_from is None
        assert f"reschedule_{booked}" in option_ids(result.presentations[0])
