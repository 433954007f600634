"""Dialogue steps and allowed transitions."""

from enum import Enum
from typing import Optional, Set


class DialogueStep(str, Enum):
    """Steps of the booking conversation."""

    # Initial
    HOME = "home"

    # Booking
    SELECT_SERVICE = "select_service"
    SELECT_PROVIDER = "select_provider"
    SELECT_DATE = "select_date"
    SELECT_TIME = "select_time"
    CAPTURE_NAME = "capture_name"
    CAPTURE_CONSENT = "capture_consent"
    CONFIRM = "confirm"

    # Cancellation
    CANCEL_SELECT = "cancel_select"
    CANCEL_CONFIRM = "cancel_confirm"

    # Rescheduling (rebooks through the booking steps)
    RESCHEDULE_SELECT = "reschedule_select"


BOOKING_STEPS: list[DialogueStep] = [
    DialogueStep.SELECT_SERVICE,
    DialogueStep.SELECT_PROVIDER,
    DialogueStep.SELECT_DATE,
    DialogueStep.SELECT_TIME,
    DialogueStep.CAPTURE_NAME,
    DialogueStep.CAPTURE_CONSENT,
    DialogueStep.CONFIRM,
]


# Forward moves driven by user input. Control tokens (home, restart, back)
# bypass this table.
VALID_TRANSITIONS: dict[DialogueStep, Set[DialogueStep]] = {
    DialogueStep.HOME: {
        DialogueStep.HOME,
        DialogueStep.SELECT_SERVICE,
        DialogueStep.CANCEL_SELECT,
        DialogueStep.RESCHEDULE_SELECT,
    },
    DialogueStep.SELECT_SERVICE: {
        DialogueStep.SELECT_PROVIDER,
        DialogueStep.SELECT_DATE,  # single provider
    },
    DialogueStep.SELECT_PROVIDER: {
        DialogueStep.SELECT_DATE,
    },
    DialogueStep.SELECT_DATE: {
        DialogueStep.SELECT_TIME,
    },
    DialogueStep.SELECT_TIME: {
        DialogueStep.SELECT_DATE,  # day filled up meanwhile
        DialogueStep.CAPTURE_NAME,
        DialogueStep.CAPTURE_CONSENT,  # name already known
        DialogueStep.CONFIRM,  # returning customer with consent on file
    },
    DialogueStep.CAPTURE_NAME: {
        DialogueStep.CAPTURE_CONSENT,
        DialogueStep.CONFIRM,
    },
    DialogueStep.CAPTURE_CONSENT: {
        DialogueStep.CONFIRM,
    },
    DialogueStep.CONFIRM: {
        DialogueStep.HOME,  # booked
        DialogueStep.SELECT_TIME,  # slot taken
        DialogueStep.CAPTURE_CONSENT,  # change preferences
    },
    DialogueStep.CANCEL_SELECT: {
        DialogueStep.CANCEL_CONFIRM,
        DialogueStep.HOME,
    },
    DialogueStep.CANCEL_CONFIRM: {
        DialogueStep.HOME,
        DialogueStep.CANCEL_SELECT,
    },
    DialogueStep.RESCHEDULE_SELECT: {
        DialogueStep.SELECT_DATE,
        DialogueStep.SELECT_SERVICE,  # booking not on record
    },
}


def can_transition(from_step: DialogueStep, to_step: DialogueStep) -> bool:
    """Check if a step transition is valid."""
    return to_step in VALID_TRANSITIONS.get(from_step, set())


def previous_booking_step(step: DialogueStep) -> Optional[DialogueStep]:
    """Booking step preceding the given one, if any."""
    if step not in BOOKING_STEPS:
        return None
    index = BOOKING_STEPS.index(step)
    return BOOKING_STEPS[index - 1] if index > 0 else None
