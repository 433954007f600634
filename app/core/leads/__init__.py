"""Lead tracking and consent recording."""

from .recorder import LeadRecorder
from .scoring import lead_tags, score_lead

__all__ = [
    "LeadRecorder",
    "lead_tags",
    "score_lead",
]
