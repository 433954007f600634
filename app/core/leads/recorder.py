"""Lead and consent recorder."""

import logging
from datetime import datetime, timezone
from typing import Optional

from app.core.errors import PersistenceFailure
from app.core.events import BookingCompleted
from app.core.session.models import Consent
from app.core.tenant import TenantConfig
from app.infra.repositories import (
    AppointmentRepository,
    AppointmentStore,
    LeadRecord,
    LeadRepository,
    LeadStore,
)
from .scoring import lead_tags, score_lead

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 50
ACTION_APPOINTMENT_BOOKED = "appointment_booked"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LeadRecorder:
    """
    Keeps the per-tenant lead record current.

    Lead tracking is bookkeeping: a failed write is logged and never
    interrupts the conversation or the booking.
    """

    def __init__(
        self,
        leads: Optional[LeadStore] = None,
        appointments: Optional[AppointmentStore] = None,
    ):
        self._leads = leads or LeadRepository()
        self._appointments = appointments or AppointmentRepository()

    @staticmethod
    def _rescore(record: LeadRecord, tenant: TenantConfig, now: datetime) -> None:
        policy = tenant.lead_scoring
        record.lead_score = score_lead(record.activity_counts, record.last_interaction, now, policy)
        record.tags = lead_tags(record.lead_score, record.activity_counts, policy, record.tags)

    async def record_interaction(
        self,
        tenant: TenantConfig,
        contact: str,
        summary: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[LeadRecord]:
        """Upsert the lead for an inbound message.

        Args:
            tenant: Tenant configuration
            contact: Customer contact
            summary: Message text (truncated to 50 characters)
            now: Current time

        Returns:
            Updated lead, or None if the write failed
        """
        now = now or _utcnow()

        def mutate(record: LeadRecord) -> None:
            record.last_interaction = now
            record.chat_summary = (summary or "Interaction")[:SUMMARY_LIMIT]
            record.source = record.source or "WhatsApp"
            self._rescore(record, tenant, now)

        try:
            return await self._leads.apply(tenant.tenant_id, contact, mutate)
        except PersistenceFailure as e:
            logger.error(f"Lead update failed for {tenant.tenant_id}:{contact}: {e}")
            return None

    async def record_action(
        self,
        tenant: TenantConfig,
        contact: str,
        action: str,
        now: Optional[datetime] = None,
    ) -> Optional[LeadRecord]:
        """Count a tracked action (link click, order...) and rescore."""
        now = now or _utcnow()

        def mutate(record: LeadRecord) -> None:
            record.activity_counts[action] = record.activity_counts.get(action, 0) + 1
            record.last_interaction = now
            self._rescore(record, tenant, now)

        try:
            return await self._leads.apply(tenant.tenant_id, contact, mutate)
        except PersistenceFailure as e:
            logger.error(f"Lead action {action} failed for {tenant.tenant_id}:{contact}: {e}")
            return None

    async def record_consent(
        self,
        tenant: TenantConfig,
        contact: str,
        consent: Consent,
    ) -> bool:
        """Store consent on the lead and on the customer's appointments.

        Returns:
            True if every write succeeded
        """
        consent_data = consent.to_dict()

        def mutate(record: LeadRecord) -> None:
            record.consent = consent_data

        try:
            await self._leads.apply(tenant.tenant_id, contact, mutate)
            updated = await self._appointments.update_consent(tenant.tenant_id, contact, consent_data)
        except PersistenceFailure as e:
            logger.error(f"Consent update failed for {tenant.tenant_id}:{contact}: {e}")
            return False

        logger.info(
            f"Consent recorded for {tenant.tenant_id}:{contact} "
            f"(reminders={consent.appointment_reminders}, {updated} appointments)"
        )
        return True

    async def previous_consent(self, tenant: TenantConfig, contact: str) -> Optional[Consent]:
        """Latest recorded consent for a returning customer, if any."""
        try:
            lead = await self._leads.get(tenant.tenant_id, contact)
            if lead and lead.consent:
                return Consent.from_dict(lead.consent)

            stored = await self._appointments.latest_consent(tenant.tenant_id, contact)
            return Consent.from_dict(stored) if stored else None
        except PersistenceFailure as e:
            logger.warning(f"Consent lookup failed for {tenant.tenant_id}:{contact}: {e}")
            return None

    async def on_booking_completed(self, event: BookingCompleted) -> None:
        """BookingCompleted subscriber: count the booking and rescore."""
        now = event.completed_at or _utcnow()

        def mutate(record: LeadRecord) -> None:
            counts = record.activity_counts
            counts[ACTION_APPOINTMENT_BOOKED] = counts.get(ACTION_APPOINTMENT_BOOKED, 0) + 1
            record.name = event.customer_name or record.name
            if event.consent is not None:
                record.consent = event.consent.to_dict()
            record.last_interaction = now
            self._rescore(record, event.tenant, now)

        await self._leads.apply(event.tenant_id, event.customer_contact, mutate)
        logger.info(f"Lead updated for booking {event.external_event_id}")
