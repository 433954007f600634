"""
Persistence for appointments and leads.

The booking core talks to the AppointmentStore / LeadStore interfaces;
the SQLAlchemy repositories below are the production implementations.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import AsyncContextManager, Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PersistenceFailure
from app.infra.database import get_db_context
from app.models.database import Appointment, Lead

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


@dataclass
class AppointmentRecord:
    """Appointment as seen by the booking core."""

    tenant_id: str
    customer_name: str
    contact: str
    service_id: str
    provider_id: str
    calendar_id: str
    date: "date"
    time_label: str
    start: datetime
    end: datetime
    external_event_id: str
    service_name: Optional[str] = None
    provider_name: Optional[str] = None
    consent: dict = field(default_factory=dict)
    revenue: float = 0.0
    id: Optional[str] = None

    @classmethod
    def from_model(cls, row: Appointment) -> "AppointmentRecord":
        return cls(
            id=str(row.id),
            tenant_id=row.tenant_id,
            customer_name=row.customer_name,
            contact=row.contact,
            service_id=row.service_id,
            service_name=row.service_name,
            provider_id=row.provider_id,
            provider_name=row.provider_name,
            calendar_id=row.calendar_id,
            date=row.appointment_date,
            time_label=row.appointment_time,
            start=row.scheduled_start,
            end=row.scheduled_end,
            external_event_id=row.external_event_id,
            consent=row.consent or {},
            revenue=row.revenue or 0.0,
        )


@dataclass
class LeadRecord:
    """Lead as seen by the recorder."""

    tenant_id: str
    contact: str
    name: Optional[str] = None
    source: str = "WhatsApp"
    chat_summary: Optional[str] = None
    activity_counts: dict[str, int] = field(default_factory=dict)
    lead_score: int = 0
    tags: list[str] = field(default_factory=list)
    consent: Optional[dict] = None
    last_interaction: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: Lead) -> "LeadRecord":
        return cls(
            tenant_id=row.tenant_id,
            contact=row.contact,
            name=row.name,
            source=row.source,
            chat_summary=row.chat_summary,
            activity_counts=dict(row.activity_counts or {}),
            lead_score=row.lead_score or 0,
            tags=list(row.tags or []),
            consent=row.consent,
            last_interaction=row.last_interaction,
        )


class AppointmentStore(ABC):
    """Appointment persistence used by the booking saga."""

    @abstractmethod
    async def create(self, record: AppointmentRecord) -> AppointmentRecord:
        """Insert an appointment. Raises PersistenceFailure."""

    @abstractmethod
    async def find_existing(
        self,
        tenant_id: str,
        contact: str,
        provider_id: str,
        start: datetime,
    ) -> Optional[AppointmentRecord]:
        """Appointment for the same customer, provider and start, if any."""

    @abstractmethod
    async def get_by_event_id(self, tenant_id: str, external_event_id: str) -> Optional[AppointmentRecord]:
        """Appointment recorded for a calendar event."""

    @abstractmethod
    async def delete_by_event_id(self, tenant_id: str, external_event_id: str) -> bool:
        """Delete by calendar event id. False if nothing was deleted."""

    @abstractmethod
    async def latest_consent(self, tenant_id: str, contact: str) -> Optional[dict]:
        """Consent recorded on the customer's most recent appointment."""

    @abstractmethod
    async def update_consent(self, tenant_id: str, contact: str, consent: dict) -> int:
        """Overwrite consent on all of a customer's appointments."""


class LeadStore(ABC):
    """Lead persistence used by the lead recorder."""

    @abstractmethod
    async def get(self, tenant_id: str, contact: str) -> Optional[LeadRecord]:
        """Fetch a lead."""

    @abstractmethod
    async def apply(
        self,
        tenant_id: str,
        contact: str,
        mutate: Callable[[LeadRecord], None],
    ) -> LeadRecord:
        """Create the lead if missing, then apply `mutate` atomically."""


class AppointmentRepository(AppointmentStore):
    """SQLAlchemy-backed appointment store."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_db_context

    async def create(self, record: AppointmentRecord) -> AppointmentRecord:
        """Insert an appointment row.

        Args:
            record: Appointment to persist

        Returns:
            Record with its database id

        Raises:
            PersistenceFailure: Database write failed
        """
        row = Appointment(
            tenant_id=record.tenant_id,
            customer_name=record.customer_name,
            contact=record.contact,
            service_id=record.service_id,
            service_name=record.service_name,
            provider_id=record.provider_id,
            provider_name=record.provider_name,
            calendar_id=record.calendar_id,
            appointment_date=record.date,
            appointment_time=record.time_label,
            scheduled_start=record.start,
            scheduled_end=record.end,
            external_event_id=record.external_event_id,
            consent=record.consent,
            revenue=record.revenue,
        )

        try:
            async with self._session_factory() as db:
                db.add(row)
                await db.flush()
                record.id = str(row.id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save appointment for event {record.external_event_id}: {e}")
            raise PersistenceFailure(f"Appointment write failed: {e}") from e

        logger.info(f"Appointment saved: {record.id} (event {record.external_event_id})")
        return record

    async def find_existing(
        self,
        tenant_id: str,
        contact: str,
        provider_id: str,
        start: datetime,
    ) -> Optional[AppointmentRecord]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Appointment).where(
                        Appointment.tenant_id == tenant_id,
                        Appointment.contact == contact,
                        Appointment.provider_id == provider_id,
                        Appointment.scheduled_start == start,
                    )
                )
                row = result.scalars().first()
                return AppointmentRecord.from_model(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Appointment lookup failed: {e}") from e

    async def get_by_event_id(self, tenant_id: str, external_event_id: str) -> Optional[AppointmentRecord]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Appointment).where(
                        Appointment.tenant_id == tenant_id,
                        Appointment.external_event_id == external_event_id,
                    )
                )
                row = result.scalars().first()
                return AppointmentRecord.from_model(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Appointment lookup failed: {e}") from e

    async def delete_by_event_id(self, tenant_id: str, external_event_id: str) -> bool:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    delete(Appointment).where(
                        Appointment.tenant_id == tenant_id,
                        Appointment.external_event_id == external_event_id,
                    )
                )
                deleted = result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete appointment for event {external_event_id}: {e}")
            raise PersistenceFailure(f"Appointment delete failed: {e}") from e

        if deleted:
            logger.info(f"Appointment deleted for event {external_event_id}")
        return bool(deleted)

    async def latest_consent(self, tenant_id: str, contact: str) -> Optional[dict]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Appointment.consent)
                    .where(
                        Appointment.tenant_id == tenant_id,
                        Appointment.contact == contact,
                    )
                    .order_by(Appointment.created_at.desc())
                    .limit(1)
                )
                return result.scalars().first()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Consent lookup failed: {e}") from e

    async def update_consent(self, tenant_id: str, contact: str, consent: dict) -> int:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(Appointment)
                    .where(
                        Appointment.tenant_id == tenant_id,
                        Appointment.contact == contact,
                    )
                    .values(consent=consent)
                )
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Consent update failed: {e}") from e


class LeadRepository(LeadStore):
    """SQLAlchemy-backed lead store."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_db_context

    async def get(self, tenant_id: str, contact: str) -> Optional[LeadRecord]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Lead).where(Lead.tenant_id == tenant_id, Lead.contact == contact)
                )
                row = result.scalars().first()
                return LeadRecord.from_model(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Lead lookup failed: {e}") from e

    async def apply(
        self,
        tenant_id: str,
        contact: str,
        mutate: Callable[[LeadRecord], None],
    ) -> LeadRecord:
        """Upsert a lead and apply a mutation under a row lock.

        Args:
            tenant_id: Tenant identifier
            contact: Customer contact
            mutate: Callback that edits the record in place

        Returns:
            The updated record
        """
        try:
            async with self._session_factory() as db:
                await db.execute(
                    insert(Lead)
                    .values(tenant_id=tenant_id, contact=contact, activity_counts={}, tags=[])
                    .on_conflict_do_nothing(constraint="uq_lead_tenant_contact")
                )
                result = await db.execute(
                    select(Lead)
                    .where(Lead.tenant_id == tenant_id, Lead.contact == contact)
                    .with_for_update()
                )
                row = result.scalars().one()

                record = LeadRecord.from_model(row)
                mutate(record)

                row.name = record.name
                row.source = record.source
                row.chat_summary = record.chat_summary
                row.activity_counts = dict(record.activity_counts)
                row.lead_score = record.lead_score
                row.tags = list(record.tags)
                row.consent = record.consent
                row.last_interaction = record.last_interaction
                return record
        except SQLAlchemyError as e:
            logger.error(f"Failed to update lead {tenant_id}:{contact}: {e}")
            raise PersistenceFailure(f"Lead update failed: {e}") from e
