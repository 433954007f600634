"""
Availability Gateway.

Abstract access to a provider's calendar, plus the Google Calendar v3
implementation used in production:
- Listing busy intervals
- Creating events for confirmed bookings
- Deleting events (cancellation and compensation)
- Finding a customer's upcoming events
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from app.config import get_settings
from app.core.errors import EventNotFound, SlotConflict, UpstreamUnavailable
from app.core.scheduling.slots import BusyInterval

logger = logging.getLogger(__name__)

CONTACT_PROPERTY = "customerContact"


@dataclass
class ExistingBooking:
    """Calendar event that belongs to a customer."""

    event_id: str
    calendar_id: str
    summary: str
    start: datetime
    end: datetime

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "event_id": self.event_id,
            "calendar_id": self.calendar_id,
            "summary": self.summary,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExistingBooking":
        """Create from stored dict."""
        return cls(
            event_id=data["event_id"],
            calendar_id=data["calendar_id"],
            summary=data.get("summary", ""),
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
        )


class AvailabilityGateway(ABC):
    """
    Calendar operations the booking core depends on.

    Implementations raise UpstreamUnavailable for transport errors and
    timeouts, and SlotConflict when the calendar rejects an overlapping
    event.
    """

    @abstractmethod
    async def list_busy(
        self,
        calendar_id: str,
        range_start: datetime,
        range_end: datetime,
    ) -> list[BusyInterval]:
        """Busy intervals in [range_start, range_end), ordered by start."""

    @abstractmethod
    async def create_event(
        self,
        calendar_id: str,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        customer_contact: str,
    ) -> str:
        """Create an event and return its external id."""

    @abstractmethod
    async def delete_event(self, calendar_id: str, external_event_id: str) -> bool:
        """Delete an event. False means it was already gone."""

    @abstractmethod
    async def find_by_customer(
        self,
        calendar_id: str,
        customer_contact: str,
        range_start: datetime,
        range_end: datetime,
    ) -> list[ExistingBooking]:
        """Events tagged with the customer's contact inside the range."""

    async def close(self) -> None:
        """Release any held resources."""


def _parse_event_time(value: dict, calendar_tz: ZoneInfo) -> datetime:
    """Parse a Google event start/end object.

    All-day events carry a bare date, interpreted as midnight in the
    calendar's timezone.
    """
    if "dateTime" in value:
        parsed = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=calendar_tz)
        return parsed
    return datetime.combine(
        date.fromisoformat(value["date"]),
        datetime.min.time(),
        tzinfo=calendar_tz,
    )


def _calendar_tz(data: dict) -> ZoneInfo:
    try:
        return ZoneInfo(data.get("timeZone") or "UTC")
    except (KeyError, ValueError):
        return ZoneInfo("UTC")


def _is_blocking(event: dict) -> bool:
    """Cancelled and transparent (free) events do not block slots."""
    if event.get("status") == "cancelled":
        return False
    if event.get("transparency") == "transparent":
        return False
    return "start" in event and "end" in event


class GoogleCalendarClient(AvailabilityGateway):
    """
    HTTP client for the Google Calendar v3 REST API.

    Uses:
    - POST {token_url} - Exchange refresh token for access token
    - GET /calendars/{id}/events - List events
    - POST /calendars/{id}/events - Create event
    - DELETE /calendars/{id}/events/{eventId} - Delete event
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        access_token: Optional[str] = None,
    ):
        """Initialize client.

        Args:
            base_url: Calendar API base URL (defaults to settings)
            timeout: Request timeout in seconds (defaults to settings)
            access_token: Static bearer token; skips the refresh exchange
        """
        settings = get_settings()
        self.base_url = base_url or settings.gcal_base_url
        self.timeout = timeout if timeout is not None else settings.calendar_timeout_seconds
        self._token_url = settings.gcal_token_url
        self._client_id = settings.gcal_client_id
        self._client_secret = settings.gcal_client_secret
        self._refresh_token = settings.gcal_refresh_token

        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = access_token
        self._token_expires_at: float = float("inf") if access_token else 0.0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # === Auth ===

    async def _get_access_token(self) -> str:
        """Return a valid access token, refreshing it when expired."""
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        if not self._refresh_token:
            raise UpstreamUnavailable("Calendar credentials are not configured")

        client = await self._get_client()
        try:
            response = await client.post(
                self._token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self._refresh_token,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable("Calendar token refresh failed", cause=e) from e

        if response.status_code != 200:
            logger.error(f"Calendar token refresh rejected: HTTP {response.status_code}")
            raise UpstreamUnavailable(f"Calendar token refresh rejected ({response.status_code})")

        data = response.json()
        self._access_token = data["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + int(data.get("expires_in", 3600)) - 60
        return self._access_token

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send an authorised request, mapping transport failures."""
        token = await self._get_access_token()
        client = await self._get_client()

        try:
            response = await client.request(
                method,
                path,
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Calendar {method} {path} timed out")
            raise UpstreamUnavailable("Calendar request timed out", cause=e) from e
        except httpx.HTTPError as e:
            logger.warning(f"Calendar {method} {path} failed: {e}")
            raise UpstreamUnavailable("Calendar request failed", cause=e) from e

        if response.status_code == 401:
            # Force a refresh on the next call
            self._access_token = None
            self._token_expires_at = 0.0

        return response

    @staticmethod
    def _events_path(calendar_id: str, event_id: Optional[str] = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            path += f"/{quote(event_id, safe='')}"
        return path

    async def _list_events(
        self,
        calendar_id: str,
        range_start: datetime,
        range_end: datetime,
        extra_params: Optional[dict] = None,
    ) -> tuple[list[dict], ZoneInfo]:
        """List single events in a range, following nextPageToken."""
        params: dict = {
            "timeMin": range_start.astimezone(timezone.utc).isoformat(),
            "timeMax": range_end.astimezone(timezone.utc).isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": 250,
        }
        if extra_params:
            params.update(extra_params)

        events: list[dict] = []
        calendar_tz = ZoneInfo("UTC")

        while True:
            response = await self._request("GET", self._events_path(calendar_id), params=params)
            if response.status_code != 200:
                logger.error(
                    f"Failed to list events for {calendar_id}: HTTP {response.status_code}"
                )
                raise UpstreamUnavailable(f"Calendar list failed ({response.status_code})")

            data = response.json()
            calendar_tz = _calendar_tz(data)
            events.extend(data.get("items", []))

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        return events, calendar_tz

    # === Availability ===

    async def list_busy(
        self,
        calendar_id: str,
        range_start: datetime,
        range_end: datetime,
    ) -> list[BusyInterval]:
        """List busy intervals.

        Args:
            calendar_id: Calendar identifier
            range_start: Range start (timezone-aware)
            range_end: Range end (timezone-aware)

        Returns:
            Busy intervals ordered by start

        Raises:
            UpstreamUnavailable: Calendar unreachable, timed out or erroring
        """
        events, calendar_tz = await self._list_events(calendar_id, range_start, range_end)

        busy = []
        for event in events:
            if not _is_blocking(event):
                continue
            try:
                start = _parse_event_time(event["start"], calendar_tz)
                end = _parse_event_time(event["end"], calendar_tz)
            except (KeyError, ValueError):
                logger.warning(f"Skipping event with unparseable times: {event.get('id')}")
                continue
            busy.append(BusyInterval(start=start, end=end))

        busy.sort(key=lambda interval: interval.start)
        logger.debug(f"Found {len(busy)} busy intervals on {calendar_id}")
        return busy

    # === Events ===

    async def create_event(
        self,
        calendar_id: str,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        customer_contact: str,
    ) -> str:
        """Create a calendar event for a booking.

        Args:
            calendar_id: Calendar identifier
            summary: Event title
            description: Event description
            start: Event start (timezone-aware)
            end: Event end (timezone-aware)
            customer_contact: Customer contact, stored as a private property

        Returns:
            External event id

        Raises:
            SlotConflict: Calendar rejected the event as conflicting
            UpstreamUnavailable: Calendar unreachable or erroring
        """
        payload = {
            "summary": summary,
            "description": description,
            "start": {"dateTime": start.isoformat()},
            "end": {"dateTime": end.isoformat()},
            "extendedProperties": {"private": {CONTACT_PROPERTY: customer_contact}},
            "reminders": {"useDefault": True},
        }

        logger.info(f"Creating calendar event on {calendar_id}: {start.isoformat()}")
        response = await self._request("POST", self._events_path(calendar_id), json=payload)

        if response.status_code == 409:
            raise SlotConflict("Calendar rejected the event as conflicting")
        if response.status_code not in (200, 201):
            logger.error(f"Failed to create event on {calendar_id}: HTTP {response.status_code}")
            raise UpstreamUnavailable(f"Calendar create failed ({response.status_code})")

        event_id = response.json()["id"]
        logger.info(f"Created calendar event {event_id}")
        return event_id

    async def delete_event(self, calendar_id: str, external_event_id: str) -> bool:
        """Delete a calendar event.

        Args:
            calendar_id: Calendar identifier
            external_event_id: Event to delete

        Returns:
            True if deleted, False if it did not exist (already deleted)

        Raises:
            UpstreamUnavailable: Calendar unreachable or erroring
        """
        try:
            await self._delete(calendar_id, external_event_id)
        except EventNotFound:
            logger.info(f"Calendar event {external_event_id} already removed")
            return False

        logger.info(f"Deleted calendar event {external_event_id}")
        return True

    async def _delete(self, calendar_id: str, external_event_id: str) -> None:
        response = await self._request(
            "DELETE", self._events_path(calendar_id, external_event_id)
        )

        if response.status_code in (404, 410):
            raise EventNotFound(external_event_id)
        if response.status_code not in (200, 204):
            logger.error(
                f"Failed to delete event {external_event_id}: HTTP {response.status_code}"
            )
            raise UpstreamUnavailable(f"Calendar delete failed ({response.status_code})")

    async def find_by_customer(
        self,
        calendar_id: str,
        customer_contact: str,
        range_start: datetime,
        range_end: datetime,
    ) -> list[ExistingBooking]:
        """Find a customer's events by their private contact property.

        Args:
            calendar_id: Calendar identifier
            customer_contact: Customer contact
            range_start: Range start
            range_end: Range end

        Returns:
            Matching bookings ordered by start
        """
        events, calendar_tz = await self._list_events(
            calendar_id,
            range_start,
            range_end,
            extra_params={"privateExtendedProperty": f"{CONTACT_PROPERTY}={customer_contact}"},
        )

        bookings = []
        for event in events:
            if event.get("status") == "cancelled":
                continue
            try:
                bookings.append(
                    ExistingBooking(
                        event_id=event["id"],
                        calendar_id=calendar_id,
                        summary=event.get("summary", ""),
                        start=_parse_event_time(event["start"], calendar_tz),
                        end=_parse_event_time(event["end"], calendar_tz),
                    )
                )
            except (KeyError, ValueError):
                logger.warning(f"Skipping malformed event {event.get('id')}")

        return sorted(bookings, key=lambda b: b.start)


# Singleton
_client: Optional[GoogleCalendarClient] = None


def get_calendar_client() -> GoogleCalendarClient:
    """Get singleton GoogleCalendarClient."""
    global _client
    if _client is None:
        _client = GoogleCalendarClient()
    return _client
