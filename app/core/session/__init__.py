"""
Session management for booking conversations.

One session per (tenant, customer): dialogue position, draft booking,
the options last presented and the per-conversation processing guard.
"""

from .models import (
    BookingDraft,
    Consent,
    PresentedOption,
    SessionData,
    CONSENT_ACCEPT_ALL,
    CONSENT_NONE,
    CONSENT_REMINDERS_ONLY,
)
from .state import BOOKING_STEPS, DialogueStep, can_transition
from .manager import SessionManager, get_session_manager

__all__ = [
    # Models
    "BookingDraft",
    "Consent",
    "PresentedOption",
    "SessionData",
    "CONSENT_ACCEPT_ALL",
    "CONSENT_NONE",
    "CONSENT_REMINDERS_ONLY",
    # State
    "BOOKING_STEPS",
    "DialogueStep",
    "can_transition",
    # Manager
    "SessionManager",
    "get_session_manager",
]
