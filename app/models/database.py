"""
Database Models

SQLAlchemy ORM models for the multi-tenant booking backend.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Date, DateTime, Float, Index, Integer, String, Text, UniqueConstraint,
    Enum as SQLEnum, text
)
from sqlalchemy.dialects.postgresql import UUID, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class Appointment(Base, TimestampMixin):
    """
    Appointment model.

    Written only by a successful booking saga. The row exists exactly when
    its calendar event exists; cancellation deletes both.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_tenant_contact", "tenant_id", "contact"),
        Index("idx_appointment_provider_start", "tenant_id", "provider_id", "scheduled_start"),
        UniqueConstraint("external_event_id", name="uq_appointment_external_event"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact: Mapped[str] = mapped_column(String(50), nullable=False)
    service_id: Mapped[str] = mapped_column(String(100), nullable=False)
    service_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    provider_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    calendar_id: Mapped[str] = mapped_column(String(255), nullable=False)
    appointment_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    appointment_time: Mapped[str] = mapped_column("time", String(20), nullable=False)
    scheduled_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    consent: Mapped[dict] = mapped_column(JSON, default=dict)
    revenue: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(AppointmentStatus),
        default=AppointmentStatus.CONFIRMED
    )
    booking_source: Mapped[str] = mapped_column(String(50), default="whatsapp")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, tenant_id='{self.tenant_id}', "
            f"provider_id='{self.provider_id}', start={self.scheduled_start}, "
            f"event='{self.external_event_id}')>"
        )


class Lead(Base, TimestampMixin):
    """
    Lead model.

    One row per (tenant, contact), upserted on every inbound interaction.
    Holds activity counters, the derived score and tags, and the
    customer's communication consent.
    """

    __tablename__ = "leads"
    __table_args__ = (
        UniqueConstraint("tenant_id", "contact", name="uq_lead_tenant_contact"),
        Index("idx_lead_tenant_score", "tenant_id", "lead_score"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    contact: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(50), default="WhatsApp")
    chat_summary: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    activity_counts: Mapped[dict] = mapped_column(JSON, default=dict)
    lead_score: Mapped[int] = mapped_column(Integer, default=0)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    consent: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    last_interaction: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<Lead(tenant_id='{self.tenant_id}', contact='{self.contact}', "
            f"score={self.lead_score})>"
        )
