"""
Booking error taxonomy.

Every failure in the booking core is scoped to one customer's conversation.
None of these are fatal to the process; the dialogue layer maps each one to
a customer-facing reply.
"""

from typing import Optional


class BookingError(Exception):
    """Base class for booking core errors."""
    pass


class UpstreamUnavailable(BookingError):
    """Calendar (or another upstream) failed or timed out. Retryable."""

    def __init__(self, message: str = "Upstream unavailable", cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause


class SlotConflict(BookingError):
    """The chosen slot is no longer free on the calendar."""
    pass


class ValidationFailure(BookingError):
    """User input or draft contents did not pass validation."""

    def __init__(self, message: str = "Validation failed", missing: Optional[list[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class PersistenceFailure(BookingError):
    """Appointment record could not be written."""
    pass


class DuplicateSubmission(BookingError):
    """A booking for this customer is already being processed."""
    pass


class EventNotFound(BookingError):
    """Calendar event does not exist (already deleted)."""
    pass
