"""
Response Generator for the booking conversation.

Builds every customer-facing presentation from the tenant's vocabulary.
Free text at the home menu is answered by Claude using the tenant's
knowledge base, with a fixed fallback when the model is unavailable.
"""

import logging
from datetime import date
from typing import Optional

from app.infra.claude import ClaudeClient, ClaudeClientError, get_claude_client
from app.core.scheduling.slots import SlotPage, format_day_label
from app.core.session.models import (
    CONSENT_ACCEPT_ALL,
    CONSENT_NONE,
    CONSENT_REMINDERS_ONLY,
    BookingDraft,
    Consent,
)
from app.core.tenant import ProviderItem, ServiceItem, TenantConfig
from .presentation import (
    ConfirmationPresentation,
    Option,
    OptionsPresentation,
    TextPresentation,
)

logger = logging.getLogger(__name__)


# Option ids
MENU_BOOK = "menu_book"
MENU_CANCEL = "menu_cancel"
MENU_RESCHEDULE = "menu_reschedule"
MENU_QUESTION = "menu_question"
SERVICE_MORE = "service_more"
SERVICE_PREV = "service_prev"
SLOT_MORE = "slot_more"
SLOT_PREV = "slot_prev"
CONFIRM_BOOKING = "confirm_booking"
CHANGE_CONSENT = "change_consent_preferences"
CANCEL_CONFIRM = "cancel_confirm_yes"
CANCEL_KEEP = "cancel_keep"

CONTROL_HOME = "home"
CONTROL_RESTART = "restart"
CONTROL_BACK = "back"

HOME_OPTION = Option(id=CONTROL_HOME, label="Home")
BACK_OPTION = Option(id=CONTROL_BACK, label="Back")

FALLBACK_ANSWER = (
    "I'm not able to answer that right now. "
    "Please choose an option below or contact us directly."
)

ANSWER_SYSTEM_PROMPT = """You are the WhatsApp assistant for {business_name}.

Answer the customer's question briefly (1-3 sentences) using ONLY the
information below. If the answer is not there, say you are not sure and
suggest booking or contacting the business.

Services:
{services}

Business information:
{knowledge_base}"""


def price_label(price: float) -> str:
    if price == int(price):
        return f"{int(price)}"
    return f"{price:.2f}"


def consent_summary(consent: Consent) -> str:
    """Human-readable communication preference."""
    if consent.appointment_reminders and consent.birthday_messages:
        return "Reminders and birthday wishes"
    if consent.appointment_reminders:
        return "Reminders only"
    return "No messages"


class ResponseGenerator:
    """
    Presentation builder with an LLM-backed free-text answerer.

    Uses tenant vocabulary for all copy, so no tenant-specific wording
    lives in the dialogue code.
    """

    def __init__(self, claude_client: Optional[ClaudeClient] = None):
        """Initialize generator.

        Args:
            claude_client: Claude client (uses singleton if not provided)
        """
        self._claude_client = claude_client

    async def _get_client(self) -> Optional[ClaudeClient]:
        """Get Claude client, None when not configured."""
        if self._claude_client is None:
            self._claude_client = await get_claude_client()
        return self._claude_client

    # === Free text ===

    async def answer_question(self, tenant: TenantConfig, question: str) -> TextPresentation:
        """Answer free text from the home step.

        Args:
            tenant: Tenant configuration
            question: Customer's message

        Returns:
            Answer text (fixed fallback if the model fails)
        """
        client = await self._get_client()
        if client is None:
            return TextPresentation(body=FALLBACK_ANSWER)

        services = "\n".join(
            f"- {s.name} ({price_label(s.price)})" for s in tenant.services
        ) or "Not listed"

        try:
            response = await client.generate(
                prompt=question,
                system_prompt=ANSWER_SYSTEM_PROMPT.format(
                    business_name=tenant.vocabulary.business_name,
                    services=services,
                    knowledge_base=tenant.knowledge_base or "Not provided",
                ),
                max_tokens=300,
                temperature=0.3,
            )
            return TextPresentation(body=response.content.strip() or FALLBACK_ANSWER)
        except ClaudeClientError as e:
            logger.warning(f"Free-text answer failed for {tenant.tenant_id}: {e}")
            return TextPresentation(body=FALLBACK_ANSWER)

    # === Menus ===

    def home_menu(self, tenant: TenantConfig, greeting: Optional[str] = None) -> OptionsPresentation:
        """Main menu."""
        prompt = greeting or (
            f"Welcome to {tenant.vocabulary.business_name}! How can we help you today?"
        )
        return OptionsPresentation(
            prompt=prompt,
            options=[
                Option(id=MENU_BOOK, label="Book appointment"),
                Option(id=MENU_CANCEL, label="Cancel my booking"),
                Option(id=MENU_RESCHEDULE, label="Reschedule booking"),
                Option(id=MENU_QUESTION, label="Ask a question"),
            ],
        )

    def ask_question_prompt(self, tenant: TenantConfig) -> TextPresentation:
        return TextPresentation(
            body="Sure, type your question and we'll do our best to help."
        )

    def service_menu(
        self,
        tenant: TenantConfig,
        services: list[ServiceItem],
        page: int,
        has_more: bool,
    ) -> OptionsPresentation:
        """One page of the service catalogue."""
        label = tenant.vocabulary.service_label.lower()
        options = [
            Option(id=s.id, label=s.name, description=price_label(s.price))
            for s in services
        ]
        if has_more:
            options.append(Option(id=SERVICE_MORE, label=f"More {label}s"))
        if page > 0:
            options.append(Option(id=SERVICE_PREV, label=f"Previous {label}s"))
        options.append(HOME_OPTION)
        return OptionsPresentation(prompt=f"Please choose a {label}:", options=options)

    def provider_menu(
        self,
        tenant: TenantConfig,
        providers: list[ProviderItem],
    ) -> OptionsPresentation:
        label = tenant.vocabulary.provider_label.lower()
        options = [Option(id=p.id, label=p.name) for p in providers]
        options.extend([BACK_OPTION, HOME_OPTION])
        return OptionsPresentation(prompt=f"Which {label} would you like?", options=options)

    def date_menu(self, tenant: TenantConfig, days: list[date]) -> OptionsPresentation:
        options = [Option(id=f"date_{d.isoformat()}", label=format_day_label(d)) for d in days]
        options.extend([BACK_OPTION, HOME_OPTION])
        return OptionsPresentation(prompt="Please choose a date:", options=options)

    def no_dates(self, tenant: TenantConfig) -> OptionsPresentation:
        return OptionsPresentation(
            prompt=(
                "Sorry, there are no free slots in the coming days. "
                "Please try another option or check back later."
            ),
            options=[BACK_OPTION, HOME_OPTION],
        )

    def time_menu(
        self,
        tenant: TenantConfig,
        day: date,
        slot_page: SlotPage,
        intro: Optional[str] = None,
    ) -> OptionsPresentation:
        """One page of slots for a day."""
        options = [Option(id=s.slot_id, label=s.display_label) for s in slot_page.slots]
        if slot_page.has_more:
            options.append(Option(id=SLOT_MORE, label="More times"))
        if slot_page.page > 0:
            options.append(Option(id=SLOT_PREV, label="Earlier times"))
        options.extend([BACK_OPTION, HOME_OPTION])

        prompt = f"Available times on {format_day_label(day)}:"
        if intro:
            prompt = f"{intro}\n\n{prompt}"
        return OptionsPresentation(prompt=prompt, options=options)

    def ask_name(self, tenant: TenantConfig, retry: bool = False) -> TextPresentation:
        if retry:
            return TextPresentation(body="Please type your full name to continue.")
        return TextPresentation(body="Great! What name should we put the booking under?")

    def consent_menu(self, tenant: TenantConfig) -> OptionsPresentation:
        return OptionsPresentation(
            prompt=(
                "We'd like to send you booking reminders and birthday wishes.\n"
                "Please choose your preference:"
            ),
            options=[
                Option(id=CONSENT_ACCEPT_ALL, label="Accept all"),
                Option(id=CONSENT_REMINDERS_ONLY, label="Reminders only"),
                Option(id=CONSENT_NONE, label="No thanks"),
            ],
        )

    # === Confirmation ===

    def booking_summary(
        self,
        tenant: TenantConfig,
        draft: BookingDraft,
        service: Optional[ServiceItem],
        provider: Optional[ProviderItem],
    ) -> str:
        vocab = tenant.vocabulary
        lines = [
            f"Name: {draft.customer_name or ''}",
            f"Date: {format_day_label(draft.date) if draft.date else ''}",
            f"Time: {draft.time_slot.display_label if draft.time_slot else ''}",
            f"{vocab.provider_label}: {provider.name if provider else 'Not specified'}",
            f"{vocab.service_label}: {service.name if service else 'Not specified'}",
        ]
        if draft.consent is not None:
            lines.append(f"Messages: {consent_summary(draft.consent)}")
        return "\n".join(lines)

    def confirmation(
        self,
        tenant: TenantConfig,
        draft: BookingDraft,
        service: Optional[ServiceItem],
        provider: Optional[ProviderItem],
        reused_consent: bool = False,
        replaces: Optional[str] = None,
    ) -> ConfirmationPresentation:
        summary = "Please confirm your booking:\n\n" + self.booking_summary(
            tenant, draft, service, provider
        )
        if replaces:
            summary += f"\n\nReplaces your booking on {replaces}."
        if reused_consent:
            summary += "\n\n(Using your previous message preference.)"
        return ConfirmationPresentation(
            summary=summary,
            options=[
                Option(id=CONFIRM_BOOKING, label="Confirm"),
                Option(id=CHANGE_CONSENT, label="Change preferences"),
                HOME_OPTION,
            ],
        )

    def booking_confirmed(
        self,
        tenant: TenantConfig,
        draft: BookingDraft,
        service: Optional[ServiceItem],
        provider: Optional[ProviderItem],
        heading: str = "Booking confirmed!",
        note: Optional[str] = None,
    ) -> OptionsPresentation:
        body = f"{heading}\n\n" + self.booking_summary(tenant, draft, service, provider)
        if note:
            body += f"\n\n{note}"
        if tenant.vocabulary.location:
            body += f"\n\nLocation: {tenant.vocabulary.location}"
        body += "\n\nPlease arrive 15 minutes early."
        if draft.consent is not None and draft.consent.any_granted:
            body += '\n\nTo stop receiving messages, reply "STOP" at any time.'
        return OptionsPresentation(
            prompt=body,
            options=[Option(id=MENU_BOOK, label="Book another"), HOME_OPTION],
        )

    # === Failures ===

    def still_processing(self) -> TextPresentation:
        return TextPresentation(body="Your booking is being processed. Please wait...")

    def try_again_later(self) -> TextPresentation:
        return TextPresentation(
            body="Our booking system is busy right now. Please try again in a moment."
        )

    def slot_taken_intro(self) -> str:
        return "Sorry, that time was just taken. Here are the times still free."

    def booking_failed(self, tenant: TenantConfig) -> OptionsPresentation:
        contact = tenant.vocabulary.support_contact
        body = "Sorry, something went wrong while saving your booking."
        if contact:
            body += f" Please contact us at {contact}."
        else:
            body += " Please contact us directly."
        return OptionsPresentation(prompt=body, options=[HOME_OPTION])

    def invalid_choice(self) -> str:
        return "Sorry, I didn't get that. Please pick one of the options."

    # === Consent commands ===

    def unsubscribed(self) -> TextPresentation:
        return TextPresentation(
            body=(
                "You have been unsubscribed from reminders and birthday messages. "
                'Send "START" to opt back in.'
            )
        )

    def resubscribed(self) -> TextPresentation:
        return TextPresentation(
            body="You're subscribed again to appointment reminders and birthday messages."
        )

    # === Cancellation ===

    def cancel_menu(self, tenant: TenantConfig, choices: list[dict]) -> OptionsPresentation:
        options = [Option(id=f"cancel_{c['event_id']}", label=c["label"]) for c in choices]
        options.append(HOME_OPTION)
        return OptionsPresentation(
            prompt="Which booking would you like to cancel?",
            options=options,
        )

    def no_bookings(self, tenant: TenantConfig) -> OptionsPresentation:
        return OptionsPresentation(
            prompt="You have no upcoming bookings with us.",
            options=[Option(id=MENU_BOOK, label="Book appointment"), HOME_OPTION],
        )

    def cancel_confirm(self, tenant: TenantConfig, choice: dict) -> ConfirmationPresentation:
        return ConfirmationPresentation(
            summary=f"Cancel this booking?\n\n{choice['label']}",
            options=[
                Option(id=CANCEL_CONFIRM, label="Yes, cancel it"),
                Option(id=CANCEL_KEEP, label="No, keep it"),
            ],
        )

    def cancelled(self, tenant: TenantConfig) -> OptionsPresentation:
        return OptionsPresentation(
            prompt="Your booking has been cancelled.",
            options=[Option(id=MENU_BOOK, label="Book again"), HOME_OPTION],
        )

    # === Rescheduling ===

    def reschedule_menu(self, tenant: TenantConfig, choices: list[dict]) -> OptionsPresentation:
        options = [Option(id=f"reschedule_{c['event_id']}", label=c["label"]) for c in choices]
        options.append(HOME_OPTION)
        return OptionsPresentation(
            prompt="Which booking would you like to move?",
            options=options,
        )

    def rescheduled(
        self,
        tenant: TenantConfig,
        draft: BookingDraft,
        service: Optional[ServiceItem],
        provider: Optional[ProviderItem],
        previous_label: str,
        previous_removed: bool = True,
    ) -> OptionsPresentation:
        """New booking made; reports whether the old one was released."""
        if previous_removed:
            note = f"Your booking on {previous_label} has been cancelled."
        else:
            contact = tenant.vocabulary.support_contact
            note = f"We could not cancel your booking on {previous_label}."
            if contact:
                note += f" Please contact us at {contact} to remove it."
            else:
                note += " Please contact us directly to remove it."
        return self.booking_confirmed(
            tenant, draft, service, provider, heading="Booking moved!", note=note
        )


# Singleton
_generator: Optional[ResponseGenerator] = None


def get_response_generator() -> ResponseGenerator:
    """Get singleton ResponseGenerator."""
    global _generator
    if _generator is None:
        _generator = ResponseGenerator()
    return _generator
