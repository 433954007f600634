"""
Session data models.

A session tracks one customer's position in the booking conversation with
one tenant, plus the draft booking built so far.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from app.core.scheduling.slots import TimeSlot
from .state import DialogueStep


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# Consent option ids presented to the customer
CONSENT_ACCEPT_ALL = "consent_confirm_all"
CONSENT_REMINDERS_ONLY = "consent_reminders_only"
CONSENT_NONE = "consent_none"


@dataclass
class Consent:
    """Communication preferences. Marketing is never opted into while booking."""

    appointment_reminders: bool = False
    birthday_messages: bool = False
    marketing_messages: bool = False
    consented_at: Optional[datetime] = None

    @classmethod
    def from_preset(cls, preset: str, now: Optional[datetime] = None) -> "Consent":
        """Build consent from one of the three presented choices.

        Raises:
            ValueError: Unknown preset id
        """
        now = now or _utcnow()
        if preset == CONSENT_ACCEPT_ALL:
            return cls(appointment_reminders=True, birthday_messages=True, consented_at=now)
        if preset == CONSENT_REMINDERS_ONLY:
            return cls(appointment_reminders=True, consented_at=now)
        if preset == CONSENT_NONE:
            return cls(consented_at=now)
        raise ValueError(f"Unknown consent preset: {preset}")

    @property
    def any_granted(self) -> bool:
        return self.appointment_reminders or self.birthday_messages or self.marketing_messages

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "appointment_reminders": self.appointment_reminders,
            "birthday_messages": self.birthday_messages,
            "marketing_messages": self.marketing_messages,
            "consented_at": self.consented_at.isoformat() if self.consented_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Consent":
        """Create from stored dict."""
        return cls(
            appointment_reminders=bool(data.get("appointment_reminders", False)),
            birthday_messages=bool(data.get("birthday_messages", False)),
            marketing_messages=bool(data.get("marketing_messages", False)),
            consented_at=_parse_dt(data.get("consented_at")),
        )


@dataclass
class BookingDraft:
    """Booking being assembled field by field."""

    service_id: Optional[str] = None
    provider_id: Optional[str] = None
    date: "Optional[date]" = None
    time_slot: Optional[TimeSlot] = None
    customer_name: Optional[str] = None
    customer_contact: Optional[str] = None
    consent: Optional[Consent] = None

    REQUIRED_FIELDS = (
        "service_id",
        "provider_id",
        "date",
        "time_slot",
        "customer_name",
        "customer_contact",
        "consent",
    )

    def missing_fields(self) -> list[str]:
        """Required fields that are still unset."""
        return [name for name in self.REQUIRED_FIELDS if getattr(self, name) is None]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    def copy(self) -> "BookingDraft":
        return replace(self)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "service_id": self.service_id,
            "provider_id": self.provider_id,
            "date": self.date.isoformat() if self.date else None,
            "time_slot": self.time_slot.to_dict() if self.time_slot else None,
            "customer_name": self.customer_name,
            "customer_contact": self.customer_contact,
            "consent": self.consent.to_dict() if self.consent else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BookingDraft":
        """Create from stored dict."""
        if not data:
            return cls()
        return cls(
            service_id=data.get("service_id"),
            provider_id=data.get("provider_id"),
            date=date.fromisoformat(data["date"]) if data.get("date") else None,
            time_slot=TimeSlot.from_dict(data["time_slot"]) if data.get("time_slot") else None,
            customer_name=data.get("customer_name"),
            customer_contact=data.get("customer_contact"),
            consent=Consent.from_dict(data["consent"]) if data.get("consent") else None,
        )


# WhatsApp list rows cap titles at 24 characters
ROW_TITLE_LIMIT = 24


@dataclass
class PresentedOption:
    """Option most recently shown to the customer."""

    id: str
    label: str
    value: Optional[str] = None

    def matches(self, text: str) -> bool:
        """Match by id, full label or truncated row title (case-insensitive)."""
        needle = text.strip().lower()
        if not needle:
            return False
        return needle in (
            self.id.lower(),
            self.label.lower(),
            self.label[:ROW_TITLE_LIMIT].lower(),
        )

    def to_dict(self) -> dict:
        return {"id": self.id, "label": self.label, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "PresentedOption":
        return cls(id=data["id"], label=data.get("label", ""), value=data.get("value"))


@dataclass
class SessionData:
    """
    Conversation state stored in Redis.

    Key pattern: booking:v1:session:{tenant_id}:{customer_id}

    The draft snapshot (previous_step / previous_draft) holds exactly one
    step of history for the "back" control.
    """

    # Identifiers
    customer_id: str = ""
    tenant_id: str = ""

    # Position
    current_step: DialogueStep = DialogueStep.HOME
    draft: BookingDraft = field(default_factory=BookingDraft)
    previous_step: Optional[DialogueStep] = None
    previous_draft: Optional[BookingDraft] = None

    # Pagination
    service_page: int = 0
    slot_page: int = 0

    # Idempotency guard
    is_processing: bool = False
    processing_token: Optional[str] = None
    processing_started_at: Optional[datetime] = None

    # Options shown in the last prompt
    presented_options: list[PresentedOption] = field(default_factory=list)
    booking_choices: list[dict] = field(default_factory=list)

    # Booking being moved (event_id, calendar_id, label) while rescheduling
    reschedule_from: Optional[dict] = None

    # Metadata
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def snapshot(self) -> None:
        """Remember the current step and draft for one-step back."""
        self.previous_step = self.current_step
        self.previous_draft = self.draft.copy()

    def restore_snapshot(self) -> bool:
        """Go back one step. Returns False when there is nothing to restore."""
        if self.previous_step is None:
            return False
        self.current_step = self.previous_step
        self.draft = self.previous_draft.copy() if self.previous_draft else BookingDraft()
        self.previous_step = None
        self.previous_draft = None
        return True

    def reset(self, step: DialogueStep = DialogueStep.HOME) -> None:
        """Clear draft and history and move to the given step."""
        self.current_step = step
        self.draft = BookingDraft(customer_contact=self.customer_id or None)
        self.previous_step = None
        self.previous_draft = None
        self.service_page = 0
        self.slot_page = 0
        self.presented_options = []
        self.booking_choices = []
        self.reschedule_from = None

    def find_option(self, text: str) -> Optional[PresentedOption]:
        """Resolve user input against the options last presented."""
        for option in self.presented_options:
            if option.matches(text):
                return option
        return None

    def is_processing_stale(self, now: datetime, timeout_seconds: int) -> bool:
        """True if the guard is held but older than the timeout."""
        if not self.is_processing or self.processing_started_at is None:
            return False
        return now - self.processing_started_at > timedelta(seconds=timeout_seconds)

    def is_held(self, now: datetime, timeout_seconds: int) -> bool:
        """True if another booking attempt currently owns this session."""
        return self.is_processing and not self.is_processing_stale(now, timeout_seconds)

    def to_json(self) -> str:
        """Convert to JSON string for Redis storage."""
        data = {
            "customer_id": self.customer_id,
            "tenant_id": self.tenant_id,
            "current_step": self.current_step.value,
            "draft": self.draft.to_dict(),
            "previous_step": self.previous_step.value if self.previous_step else None,
            "previous_draft": self.previous_draft.to_dict() if self.previous_draft else None,
            "service_page": self.service_page,
            "slot_page": self.slot_page,
            "is_processing": self.is_processing,
            "processing_token": self.processing_token,
            "processing_started_at": (
                self.processing_started_at.isoformat() if self.processing_started_at else None
            ),
            "presented_options": [o.to_dict() for o in self.presented_options],
            "booking_choices": self.booking_choices,
            "reschedule_from": self.reschedule_from,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        return json.dumps(data)

    @classmethod
    def from_json(cls, json_str: str) -> "SessionData":
        """Create from JSON string."""
        data = json.loads(json_str)
        previous_step = data.get("previous_step")
        previous_draft = data.get("previous_draft")
        return cls(
            customer_id=data["customer_id"],
            tenant_id=data["tenant_id"],
            current_step=DialogueStep(data.get("current_step", DialogueStep.HOME.value)),
            draft=BookingDraft.from_dict(data.get("draft")),
            previous_step=DialogueStep(previous_step) if previous_step else None,
            previous_draft=BookingDraft.from_dict(previous_draft) if previous_draft else None,
            service_page=data.get("service_page", 0),
            slot_page=data.get("slot_page", 0),
            is_processing=data.get("is_processing", False),
            processing_token=data.get("processing_token"),
            processing_started_at=_parse_dt(data.get("processing_started_at")),
            presented_options=[
                PresentedOption.from_dict(o) for o in data.get("presented_options", [])
            ],
            booking_choices=data.get("booking_choices", []),
            reschedule_from=data.get("reschedule_from"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return json.loads(self.to_json())
