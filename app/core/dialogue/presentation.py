"""
Presentation requests.

Transport-agnostic descriptions of what to show the customer. The
messaging layer turns them into WhatsApp list, button or text payloads.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from app.core.session.models import ROW_TITLE_LIMIT, PresentedOption


@dataclass
class Option:
    """Selectable option: opaque id plus display label."""

    id: str
    label: str
    description: Optional[str] = None

    @property
    def row_title(self) -> str:
        """Label truncated to the WhatsApp row title limit."""
        return self.label[:ROW_TITLE_LIMIT]

    def to_dict(self) -> dict:
        data = {"id": self.id, "label": self.label, "title": self.row_title}
        if self.description:
            data["description"] = self.description
        return data

    def to_presented(self) -> PresentedOption:
        return PresentedOption(id=self.id, label=self.label)


@dataclass
class OptionsPresentation:
    """Prompt with a list of options (WhatsApp list or buttons)."""

    prompt: str
    options: list[Option] = field(default_factory=list)
    kind: str = "options"

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "prompt": self.prompt,
            "options": [o.to_dict() for o in self.options],
        }


@dataclass
class TextPresentation:
    """Plain text message."""

    body: str
    kind: str = "text"

    def to_dict(self) -> dict:
        return {"type": self.kind, "body": self.body}


@dataclass
class ConfirmationPresentation:
    """Booking summary with confirm / change / cancel options."""

    summary: str
    options: list[Option] = field(default_factory=list)
    kind: str = "confirmation"

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "summary": self.summary,
            "options": [o.to_dict() for o in self.options],
        }


Presentation = Union[OptionsPresentation, TextPresentation, ConfirmationPresentation]


@dataclass
class Delivery:
    """Presentation addressed to someone other than the current customer."""

    to: str
    presentation: Presentation
    tenant_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "to": self.to,
            "tenant_id": self.tenant_id,
            "presentation": self.presentation.to_dict(),
        }


def presented_options(presentation: Presentation) -> list[PresentedOption]:
    """Options a presentation offers, in the form stored on the session."""
    options = getattr(presentation, "options", None) or []
    return [option.to_presented() for option in options]
