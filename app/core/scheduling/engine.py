"""
Scheduling Engine - Main Orchestrator.

Entry point for every inbound event. Loads the conversation's session,
records the interaction on the lead, runs the dialogue state machine and
persists the session it produced.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from app.core.dialogue.flow import EVENT_FREE_TEXT, EVENT_SELECTION, ConversationFlow
from app.core.dialogue.presentation import Delivery, Presentation
from app.core.dialogue.responses import ResponseGenerator, get_response_generator
from app.core.events import BookingCancelled, BookingCompleted, EventBus
from app.core.leads.recorder import LeadRecorder
from app.core.scheduling.calendar_client import get_calendar_client
from app.core.scheduling.saga import BookingSaga
from app.core.session.manager import SessionManager, get_session_manager
from app.core.session.state import DialogueStep
from app.core.tenant import TenantConfig
from app.infra.notifications import AdminNotifier
from app.infra.repositories import AppointmentRepository
from app.infra.tasks import FollowUpScheduler, get_follow_up_queue

logger = logging.getLogger(__name__)

def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class InboundEvent:
    """Message already parsed by the transport layer."""

    customer_id: str
    tenant_id: str
    type: str
    payload: str


@dataclass
class EngineResponse:
    """Response from scheduling engine."""

    presentations: list[Presentation]
    step: DialogueStep
    notifications: list[Delivery] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "step": self.step.value,
            "presentations": [p.to_dict() for p in self.presentations],
            "notifications": [d.to_dict() for d in self.notifications],
        }


class SchedulingEngine:
    """
    Main orchestrator for the booking backend.

    Coordinates:
    - Session loading and saving
    - Lead interaction tracking
    - Conversation flow (which drives the booking saga)
    """

    def __init__(
        self,
        sessions: SessionManager,
        flow: ConversationFlow,
        recorder: Optional[LeadRecorder] = None,
        responses: Optional[ResponseGenerator] = None,
    ):
        """Initialize engine.

        Args:
            sessions: Session store
            flow: Dialogue state machine
            recorder: Lead recorder
            responses: Presentation builder
        """
        self._sessions = sessions
        self._flow = flow
        self._recorder = recorder or LeadRecorder()
        self._responses = responses or get_response_generator()

    async def process(
        self,
        event: InboundEvent,
        tenant: TenantConfig,
        now: Optional[datetime] = None,
    ) -> EngineResponse:
        """Process one inbound event.

        Args:
            event: Parsed inbound event
            tenant: Configuration of the event's tenant
            now: Current time

        Returns:
            EngineResponse with presentations for the customer and any
            notifications for other recipients
        """
        if event.tenant_id != tenant.tenant_id:
            raise ValueError(f"Event for {event.tenant_id} processed with tenant {tenant.tenant_id}")

        now = now or _utcnow()
        session = await self._sessions.get(event.tenant_id, event.customer_id)
        is_new = session is None
        if session is None:
            session = await self._sessions.get_or_create(event.tenant_id, event.customer_id)

        await self._recorder.record_interaction(tenant, event.customer_id, event.payload, now)

        if session.is_held(now, self._sessions.processing_timeout):
            logger.info(f"Session busy, deferring event from {tenant.tenant_id}:{event.customer_id}")
            return EngineResponse(
                presentations=[self._responses.still_processing()],
                step=session.current_step,
            )

        try:
            result = await self._flow.handle(
                session, tenant, event.payload, now, is_new=is_new, kind=event.type
            )
        except Exception as e:
            logger.error(
                f"Error processing event from {tenant.tenant_id}:{event.customer_id}: {e}",
                exc_info=True,
            )
            return EngineResponse(
                presentations=[self._responses.booking_failed(tenant)],
                step=session.current_step,
            )

        if result.save_session and not await self._sessions.save(session):
            logger.warning(
                f"Session for {tenant.tenant_id}:{event.customer_id} was not saved; "
                f"another booking attempt holds it"
            )

        return EngineResponse(
            presentations=result.presentations,
            step=session.current_step,
            notifications=result.deliveries,
        )


def build_event_bus(recorder: LeadRecorder) -> EventBus:
    """Wire the booking event subscribers."""
    follow_ups = FollowUpScheduler(get_follow_up_queue())
    notifier = AdminNotifier()

    bus = EventBus()
    bus.subscribe(recorder.on_booking_completed, BookingCompleted)
    bus.subscribe(follow_ups.on_booking_completed, BookingCompleted)
    bus.subscribe(notifier.on_booking_completed, BookingCompleted)
    bus.subscribe(follow_ups.on_booking_cancelled, BookingCancelled)
    return bus


# Singleton
_engine: Optional[SchedulingEngine] = None


async def get_scheduling_engine() -> SchedulingEngine:
    """Get singleton SchedulingEngine wired to the production collaborators."""
    global _engine
    if _engine is None:
        sessions = await get_session_manager()
        gateway = get_calendar_client()
        recorder = LeadRecorder()
        responses = get_response_generator()

        saga = BookingSaga(
            gateway=gateway,
            appointments=AppointmentRepository(),
            sessions=sessions,
            events=build_event_bus(recorder),
        )
        flow = ConversationFlow(gateway, saga, responses=responses, recorder=recorder)
        _engine = SchedulingEngine(sessions, flow, recorder=recorder, responses=responses)
    return _engine
