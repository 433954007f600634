"""
Scheduling Module

Slot calculation and calendar access. The booking saga and the
scheduling engine import the session and dialogue layers, so they are
imported from their own modules:

    from app.core.scheduling.engine import get_scheduling_engine
    from app.core.scheduling.saga import BookingSaga

Usage:
    from app.core.scheduling import compute_slots, get_calendar_client

    busy = await get_calendar_client().list_busy(calendar_id, start, end)
    page = compute_slots(day, tenant.business_hours, busy, ...)
"""

# Slot Calculator
from app.core.scheduling.slots import (
    BusyInterval,
    SlotPage,
    TimeSlot,
    bookable_days,
    compute_slots,
)

# Availability Gateway
from app.core.scheduling.calendar_client import (
    AvailabilityGateway,
    ExistingBooking,
    GoogleCalendarClient,
    get_calendar_client,
)

__all__ = [
    # Slot Calculator
    "BusyInterval",
    "SlotPage",
    "TimeSlot",
    "bookable_days",
    "compute_slots",
    # Availability Gateway
    "AvailabilityGateway",
    "ExistingBooking",
    "GoogleCalendarClient",
    "get_calendar_client",
]
