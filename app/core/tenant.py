"""
Tenant configuration and catalog.

Each tenant (salon, clinic, turf...) supplies its own catalog, calendars,
business hours and vocabulary. The booking core never branches on tenant
identity; it only reads these values.
"""

import json
import logging
from datetime import time, timedelta
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator, model_validator

from app.config import settings

logger = logging.getLogger(__name__)


class DayHours(BaseModel):
    """Opening hours for a single weekday."""

    open: time
    close: time

    @model_validator(mode="after")
    def _check_order(self) -> "DayHours":
        if self.close <= self.open:
            raise ValueError(f"close ({self.close}) must be after open ({self.open})")
        return self


def _default_week() -> dict[int, Optional[DayHours]]:
    weekday = DayHours(open=time(7, 0), close=time(18, 0))
    return {
        0: weekday,
        1: weekday,
        2: weekday,
        3: weekday,
        4: weekday,
        5: DayHours(open=time(7, 0), close=time(14, 0)),
        6: None,
    }


class BusinessHours(BaseModel):
    """Weekly opening hours keyed by weekday (Monday=0 ... Sunday=6).

    A missing or null weekday means closed.
    """

    week: dict[int, Optional[DayHours]] = Field(default_factory=_default_week)

    @field_validator("week")
    @classmethod
    def _check_weekdays(cls, value: dict[int, Optional[DayHours]]) -> dict[int, Optional[DayHours]]:
        for weekday in value:
            if weekday < 0 or weekday > 6:
                raise ValueError(f"Invalid weekday {weekday}")
        return value

    @classmethod
    def every_day(cls, open_at: time, close_at: time) -> "BusinessHours":
        """Same hours on all seven days."""
        hours = DayHours(open=open_at, close=close_at)
        return cls(week={day: hours for day in range(7)})

    def for_weekday(self, weekday: int) -> Optional[DayHours]:
        return self.week.get(weekday)


class ServiceItem(BaseModel):
    """Bookable service."""

    id: str
    name: str
    price: float = 0.0
    duration_minutes: Optional[int] = None
    follow_up_message: Optional[str] = None


class ProviderItem(BaseModel):
    """Staff member with their own calendar."""

    id: str
    name: str
    calendar_id: str
    service_ids: list[str] = Field(default_factory=list)

    def offers(self, service_id: str) -> bool:
        """Empty service_ids means the provider offers everything."""
        return not self.service_ids or service_id in self.service_ids


class Vocabulary(BaseModel):
    """Tenant-specific wording used in prompts."""

    business_name: str = "our studio"
    provider_label: str = "Specialist"
    service_label: str = "Service"
    location: Optional[str] = None
    support_contact: Optional[str] = None


class LeadScoringPolicy(BaseModel):
    """Points awarded per tracked action, plus recency bonus and tag thresholds."""

    action_points: dict[str, int] = Field(
        default_factory=lambda: {
            "appointment_booked": 50,
            "order_placed": 50,
            "checkout_initiated": 30,
            "add_to_cart": 20,
            "link_click": 5,
        }
    )
    recency_bonus: int = 10
    recency_window_days: int = 7
    warm_threshold: int = 50
    high_value_threshold: int = 100


class TenantConfig(BaseModel):
    """Everything the booking core needs to know about a tenant."""

    tenant_id: str
    timezone: str = "UTC"
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    slot_duration_minutes: int = Field(default=30, gt=0)
    min_lead_time_minutes: int = Field(default=30, ge=0)
    booking_days_shown: int = Field(default=7, gt=0)
    booking_horizon_days: int = Field(default=21, gt=0)
    services_per_page: int = Field(default=8, gt=0)
    slots_per_page: int = Field(default=9, gt=0)
    services: list[ServiceItem] = Field(default_factory=list)
    providers: list[ProviderItem] = Field(default_factory=list)
    vocabulary: Vocabulary = Field(default_factory=Vocabulary)
    knowledge_base: str = ""
    admin_contacts: list[str] = Field(default_factory=list)
    lead_scoring: LeadScoringPolicy = Field(default_factory=LeadScoringPolicy)
    follow_up_delay_minutes: Optional[int] = None

    model_config = {"frozen": True}

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        ZoneInfo(value)
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def slot_duration(self) -> timedelta:
        return timedelta(minutes=self.slot_duration_minutes)

    @property
    def min_lead_time(self) -> timedelta:
        return timedelta(minutes=self.min_lead_time_minutes)

    def get_service(self, service_id: Optional[str]) -> Optional[ServiceItem]:
        for service in self.services:
            if service.id == service_id:
                return service
        return None

    def get_provider(self, provider_id: Optional[str]) -> Optional[ProviderItem]:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def providers_for(self, service_id: Optional[str]) -> list[ProviderItem]:
        if service_id is None:
            return list(self.providers)
        return [p for p in self.providers if p.offers(service_id)]


class TenantRegistry:
    """
    Read-only lookup of tenant configurations.

    Loaded once from a JSON file: either a list of tenant objects or an
    object mapping tenant_id to tenant object.
    """

    def __init__(self, tenants: Optional[list[TenantConfig]] = None):
        self._tenants: dict[str, TenantConfig] = {}
        for tenant in tenants or []:
            self._tenants[tenant.tenant_id] = tenant

    @classmethod
    def from_file(cls, path: str | Path) -> "TenantRegistry":
        """Load tenants from a JSON file.

        Args:
            path: JSON file path

        Returns:
            TenantRegistry (empty if the file does not exist)
        """
        path = Path(path)
        if not path.exists():
            logger.warning(f"Tenants file not found: {path}")
            return cls()

        raw = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(raw, dict):
            raw = [{"tenant_id": key, **value} for key, value in raw.items()]

        tenants = [TenantConfig.model_validate(item) for item in raw]
        logger.info(f"Loaded {len(tenants)} tenant configurations from {path}")
        return cls(tenants)

    def get(self, tenant_id: str) -> Optional[TenantConfig]:
        return self._tenants.get(tenant_id)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._tenants

    def __len__(self) -> int:
        return len(self._tenants)


# Singleton
_registry: Optional[TenantRegistry] = None


def get_tenant_registry() -> TenantRegistry:
    """Get singleton TenantRegistry loaded from settings.tenants_file."""
    global _registry
    if _registry is None:
        _registry = TenantRegistry.from_file(settings.tenants_file)
    return _registry
