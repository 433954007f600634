"""
Booking event bus.

Side effects of a confirmed booking (lead update, follow-up scheduling,
admin notification) subscribe here. A failing subscriber is logged and
never undoes the booking or blocks the other subscribers.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional, Union

from app.core.dialogue.presentation import Delivery
from app.core.session.models import Consent
from app.core.tenant import TenantConfig

logger = logging.getLogger(__name__)


@dataclass
class BookingCompleted:
    """Emitted once per successfully committed booking."""

    tenant: TenantConfig
    appointment_id: Optional[str]
    external_event_id: str
    customer_contact: str
    customer_name: str
    service_id: str
    provider_id: str
    start: datetime
    end: datetime
    consent: Optional[Consent] = None
    revenue: float = 0.0
    completed_at: Optional[datetime] = None

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id


@dataclass
class BookingCancelled:
    """Emitted when a cancellation removed the event or the record."""

    tenant: TenantConfig
    external_event_id: str
    calendar_id: str

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id


BookingEvent = Union[BookingCompleted, BookingCancelled]
Subscriber = Callable[[BookingEvent], Awaitable[Optional[list[Delivery]]]]


@dataclass
class EventBus:
    """In-process fan-out of booking events to async subscribers."""

    subscribers: dict[type, list[Subscriber]] = field(default_factory=dict)

    def subscribe(self, subscriber: Subscriber, event_type: type = BookingCompleted) -> None:
        self.subscribers.setdefault(event_type, []).append(subscriber)

    async def publish(self, event: BookingEvent) -> list[Delivery]:
        """Run every subscriber for the event's type, in order.

        Returns:
            Deliveries produced by subscribers (e.g. admin notifications)
        """
        deliveries: list[Delivery] = []
        for subscriber in self.subscribers.get(type(event), []):
            name = getattr(subscriber, "__qualname__", repr(subscriber))
            try:
                produced = await subscriber(event)
            except Exception as e:
                logger.error(
                    f"{type(event).__name__} subscriber {name} failed for event "
                    f"{event.external_event_id}: {e}",
                    exc_info=True,
                )
                continue
            if produced:
                deliveries.extend(produced)
        return deliveries
