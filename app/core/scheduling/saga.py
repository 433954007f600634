"""
Booking Saga.

Commits a booking across two independently failing systems, the calendar
and the appointment database, with a compensating calendar delete when
the database write fails:

    DRAFTING -> VALIDATING -> RESERVING -> PERSISTING -> DONE
                     |             |            |
       FAILED_VALIDATION    FAILED_RESERVE   COMPENSATING -> FAILED_PERSIST

REJECTED_DUPLICATE is returned when another attempt for the same
conversation already holds the processing guard.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from app.core.dialogue.presentation import Delivery
from app.core.errors import (
    BookingError,
    DuplicateSubmission,
    PersistenceFailure,
    SlotConflict,
    UpstreamUnavailable,
    ValidationFailure,
)
from app.core.events import BookingCancelled, BookingCompleted, EventBus
from app.core.scheduling.calendar_client import AvailabilityGateway
from app.core.scheduling.slots import day_bounds, is_slot_free
from app.core.session.manager import SessionManager
from app.core.session.models import BookingDraft, SessionData
from app.core.tenant import TenantConfig
from app.infra.repositories import AppointmentRecord, AppointmentStore

logger = logging.getLogger(__name__)


class SagaState(str, Enum):
    """Booking saga states."""

    DRAFTING = "drafting"
    VALIDATING = "validating"
    RESERVING = "reserving"
    PERSISTING = "persisting"
    COMPENSATING = "compensating"
    DONE = "done"

    # Terminal failures
    FAILED_VALIDATION = "failed_validation"
    FAILED_RESERVE = "failed_reserve"
    FAILED_PERSIST = "failed_persist"
    REJECTED_DUPLICATE = "rejected_duplicate"


TERMINAL_STATES = {
    SagaState.DONE,
    SagaState.FAILED_VALIDATION,
    SagaState.FAILED_RESERVE,
    SagaState.FAILED_PERSIST,
    SagaState.REJECTED_DUPLICATE,
}


@dataclass
class SagaOutcome:
    """Result of one saga run."""

    state: SagaState
    draft: BookingDraft
    appointment: Optional[AppointmentRecord] = None
    external_event_id: Optional[str] = None
    error: Optional[BookingError] = None
    deliveries: list[Delivery] = field(default_factory=list)
    history: list[SagaState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == SagaState.DONE

    @property
    def reused_existing(self) -> bool:
        """DONE without creating anything: the booking was already recorded."""
        return self.succeeded and SagaState.RESERVING not in self.history

    @property
    def is_conflict(self) -> bool:
        return isinstance(self.error, SlotConflict)

    @property
    def is_retryable(self) -> bool:
        return isinstance(self.error, UpstreamUnavailable)


class _Run:
    """Tracks the state history of a single commit."""

    def __init__(self, draft: BookingDraft):
        self.draft = draft
        self.history: list[SagaState] = [SagaState.DRAFTING]

    def enter(self, state: SagaState) -> None:
        self.history.append(state)

    def finish(self, state: SagaState, **kwargs) -> SagaOutcome:
        self.enter(state)
        return SagaOutcome(state=state, draft=self.draft, history=list(self.history), **kwargs)


class BookingSaga:
    """
    Commit and cancel bookings.

    The draft is eligible only when complete and its slot starts no
    earlier than now + min lead time. The chosen slot is re-checked
    against the calendar immediately before the event is created.
    """

    def __init__(
        self,
        gateway: AvailabilityGateway,
        appointments: AppointmentStore,
        sessions: SessionManager,
        events: Optional[EventBus] = None,
    ):
        self._gateway = gateway
        self._appointments = appointments
        self._sessions = sessions
        self._events = events or EventBus()

    def _validate(self, draft: BookingDraft, tenant: TenantConfig, now: datetime) -> None:
        """Raise ValidationFailure or SlotConflict for an ineligible draft."""
        missing = draft.missing_fields()
        if missing:
            raise ValidationFailure(f"Draft incomplete: {', '.join(missing)}", missing=missing)

        if tenant.get_service(draft.service_id) is None:
            raise ValidationFailure(f"Unknown service {draft.service_id}", missing=["service_id"])
        if tenant.get_provider(draft.provider_id) is None:
            raise ValidationFailure(f"Unknown provider {draft.provider_id}", missing=["provider_id"])

        if draft.time_slot.start < now + tenant.min_lead_time:
            raise SlotConflict("Selected slot is no longer bookable")

    async def commit(
        self,
        session: SessionData,
        tenant: TenantConfig,
        now: Optional[datetime] = None,
    ) -> SagaOutcome:
        """Run the booking saga for the session's draft.

        On DONE the session is reset to home. On every other outcome the
        draft is left untouched so the dialogue can recover.

        Args:
            session: Conversation session holding the draft
            tenant: Tenant configuration
            now: Current time

        Returns:
            SagaOutcome describing the terminal state
        """
        now = now or datetime.now(timezone.utc)
        draft = session.draft.copy()
        run = _Run(draft)

        # Validate
        run.enter(SagaState.VALIDATING)
        try:
            self._validate(draft, tenant, now)
        except ValidationFailure as e:
            logger.info(f"Booking validation failed for {session.customer_id}: {e}")
            return run.finish(SagaState.FAILED_VALIDATION, error=e)
        except SlotConflict as e:
            logger.info(f"Booking slot expired for {session.customer_id}")
            return run.finish(SagaState.FAILED_RESERVE, error=e)

        # Idempotency guard
        token = await self._sessions.begin_processing(session, now)
        if token is None:
            logger.info(f"Duplicate booking submission rejected for {session.customer_id}")
            return run.finish(
                SagaState.REJECTED_DUPLICATE,
                error=DuplicateSubmission("Booking already in progress"),
            )

        try:
            outcome = await self._reserve_and_persist(session, tenant, run, now)
            if outcome.succeeded:
                session.reset()
        finally:
            await self._sessions.end_processing(session)

        if outcome.succeeded and not outcome.reused_existing:
            outcome.deliveries = await self._publish(outcome, tenant, now)

        return outcome

    async def _reserve_and_persist(
        self,
        session: SessionData,
        tenant: TenantConfig,
        run: _Run,
        now: datetime,
    ) -> SagaOutcome:
        draft = run.draft
        service = tenant.get_service(draft.service_id)
        provider = tenant.get_provider(draft.provider_id)
        slot = draft.time_slot

        # Existing record
        try:
            existing = await self._appointments.find_existing(
                tenant.tenant_id, draft.customer_contact, provider.id, slot.start
            )
        except PersistenceFailure as e:
            logger.error(f"Existing-booking check failed for {session.customer_id}: {e}")
            return run.finish(SagaState.FAILED_PERSIST, error=e)

        if existing is not None:
            logger.info(
                f"Booking already recorded for {session.customer_id} "
                f"(event {existing.external_event_id}); not creating another"
            )
            return run.finish(
                SagaState.DONE,
                appointment=existing,
                external_event_id=existing.external_event_id,
            )

        # Reserve: re-check then create
        run.enter(SagaState.RESERVING)
        range_start, range_end = day_bounds(draft.date, tenant.tz)
        try:
            busy = await self._gateway.list_busy(provider.calendar_id, range_start, range_end)
            if not is_slot_free(slot.start, slot.end, busy):
                raise SlotConflict("Slot was taken before the booking was created")

            event_id = await self._gateway.create_event(
                calendar_id=provider.calendar_id,
                summary=f"{service.name} - {draft.customer_name}",
                description=(
                    f"{tenant.vocabulary.service_label}: {service.name}\n"
                    f"{tenant.vocabulary.provider_label}: {provider.name}\n"
                    f"Customer: {draft.customer_name}\n"
                    f"Phone: {draft.customer_contact}\n"
                    f"Booked via WhatsApp"
                ),
                start=slot.start,
                end=slot.end,
                customer_contact=draft.customer_contact,
            )
        except SlotConflict as e:
            logger.info(f"Slot conflict for {session.customer_id} at {slot.start.isoformat()}")
            return run.finish(SagaState.FAILED_RESERVE, error=e)
        except UpstreamUnavailable as e:
            logger.warning(f"Calendar unavailable while reserving for {session.customer_id}: {e}")
            return run.finish(SagaState.FAILED_RESERVE, error=e)

        # Persist
        run.enter(SagaState.PERSISTING)
        record = AppointmentRecord(
            tenant_id=tenant.tenant_id,
            customer_name=draft.customer_name,
            contact=draft.customer_contact,
            service_id=service.id,
            service_name=service.name,
            provider_id=provider.id,
            provider_name=provider.name,
            calendar_id=provider.calendar_id,
            date=draft.date,
            time_label=slot.display_label,
            start=slot.start,
            end=slot.end,
            external_event_id=event_id,
            consent=draft.consent.to_dict(),
            revenue=service.price,
        )

        try:
            saved = await self._appointments.create(record)
        except Exception as e:
            failure = e if isinstance(e, PersistenceFailure) else PersistenceFailure(str(e))
            run.enter(SagaState.COMPENSATING)
            await self._compensate(provider.calendar_id, event_id, failure)
            return run.finish(
                SagaState.FAILED_PERSIST,
                external_event_id=event_id,
                error=failure,
            )

        logger.info(
            f"Booking committed for {session.customer_id}: event {event_id}, "
            f"appointment {saved.id}"
        )
        return run.finish(SagaState.DONE, appointment=saved, external_event_id=event_id)

    async def _compensate(self, calendar_id: str, event_id: str, cause: Exception) -> None:
        """Delete the created event once. Failure needs manual reconciliation."""
        logger.warning(f"Appointment write failed ({cause}); deleting calendar event {event_id}")
        try:
            await self._gateway.delete_event(calendar_id, event_id)
        except BookingError as e:
            logger.error(
                f"Compensation failed: calendar event {event_id} on {calendar_id} has no "
                f"appointment record and must be reconciled manually: {e}"
            )

    async def _publish(
        self,
        outcome: SagaOutcome,
        tenant: TenantConfig,
        now: datetime,
    ) -> list[Delivery]:
        draft = outcome.draft
        event = BookingCompleted(
            tenant=tenant,
            appointment_id=outcome.appointment.id,
            external_event_id=outcome.external_event_id,
            customer_contact=draft.customer_contact,
            customer_name=draft.customer_name,
            service_id=draft.service_id,
            provider_id=draft.provider_id,
            start=draft.time_slot.start,
            end=draft.time_slot.end,
            consent=draft.consent,
            revenue=outcome.appointment.revenue,
            completed_at=now,
        )
        return await self._events.publish(event)

    async def cancel(self, tenant: TenantConfig, calendar_id: str, event_id: str) -> bool:
        """Cancel a booking: calendar event first, then the appointment row.

        Both steps are idempotent, so re-running a cancellation is a no-op.

        Args:
            tenant: Tenant configuration
            calendar_id: Calendar holding the event
            event_id: External event id

        Returns:
            True if anything was removed

        Raises:
            UpstreamUnavailable: Calendar unreachable (nothing deleted)
            PersistenceFailure: Event deleted but the row could not be (retry to finish)
        """
        event_removed = await self._gateway.delete_event(calendar_id, event_id)
        row_removed = await self._appointments.delete_by_event_id(tenant.tenant_id, event_id)

        logger.info(
            f"Cancellation for event {event_id}: calendar={'deleted' if event_removed else 'absent'}, "
            f"record={'deleted' if row_removed else 'absent'}"
        )
        removed = event_removed or row_removed
        if removed:
            await self._events.publish(
                BookingCancelled(tenant=tenant, external_event_id=event_id, calendar_id=calendar_id)
            )
        return removed

    async def find_booking(self, tenant: TenantConfig, event_id: str) -> Optional[AppointmentRecord]:
        """Appointment row for a calendar event, None if missing or unreadable."""
        try:
            return await self._appointments.get_by_event_id(tenant.tenant_id, event_id)
        except PersistenceFailure as e:
            logger.warning(f"Appointment lookup for event {event_id} failed: {e}")
            return None
