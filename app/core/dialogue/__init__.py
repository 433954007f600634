"""
Dialogue layer: presentation requests and tenant-worded responses.

The state machine itself lives in app.core.dialogue.flow.
"""

from .presentation import (
    ConfirmationPresentation,
    Delivery,
    Option,
    OptionsPresentation,
    Presentation,
    TextPresentation,
)
from .responses import ResponseGenerator, get_response_generator

__all__ = [
    "ConfirmationPresentation",
    "Delivery",
    "Option",
    "OptionsPresentation",
    "Presentation",
    "TextPresentation",
    "ResponseGenerator",
    "get_response_generator",
]
