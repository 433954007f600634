"""
Admin notifications.

Tells a tenant's admins about each new booking. The notifier only builds
the messages; the messaging layer sends the returned deliveries.
"""

import logging

from app.core.dialogue.presentation import Delivery, TextPresentation
from app.core.dialogue.responses import price_label
from app.core.events import BookingCompleted
from app.core.scheduling.slots import format_day_label, format_time_label

logger = logging.getLogger(__name__)


class AdminNotifier:
    """BookingCompleted subscriber producing one delivery per admin contact."""

    def build_message(self, event: BookingCompleted) -> str:
        """Booking summary for staff.

        Args:
            event: Completed booking

        Returns:
            Plain text notification body
        """
        tenant = event.tenant
        vocab = tenant.vocabulary
        service = tenant.get_service(event.service_id)
        provider = tenant.get_provider(event.provider_id)
        local_start = event.start.astimezone(tenant.tz)

        lines = [
            "New booking",
            f"Customer: {event.customer_name} ({event.customer_contact})",
            f"{vocab.service_label}: {service.name if service else event.service_id}",
            f"{vocab.provider_label}: {provider.name if provider else event.provider_id}",
            f"Date: {format_day_label(local_start.date())}",
            f"Time: {format_time_label(local_start)}",
        ]
        if event.revenue:
            lines.append(f"Price: {price_label(event.revenue)}")
        return "\n".join(lines)

    async def on_booking_completed(self, event: BookingCompleted) -> list[Delivery]:
        contacts = event.tenant.admin_contacts
        if not contacts:
            return []

        body = self.build_message(event)
        logger.info(
            f"Notifying {len(contacts)} admins of booking {event.external_event_id}"
        )
        return [
            Delivery(to=contact, presentation=TextPresentation(body=body), tenant_id=event.tenant_id)
            for contact in contacts
        ]
