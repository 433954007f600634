"""
Inbound Events API Endpoint.

Receives messages already parsed by the WhatsApp transport layer and
returns the presentations to send back.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Header, status
from pydantic import BaseModel, Field

from app.core.scheduling.engine import (
    InboundEvent,
    SchedulingEngine,
    get_scheduling_engine,
)
from app.core.session.manager import SessionManager, get_session_manager
from app.core.tenant import TenantConfig, TenantRegistry, get_tenant_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])


class EventRequest(BaseModel):
    """Inbound event request."""

    customer_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Conversation identity (the customer's WhatsApp number)",
        examples=["447700900123"],
    )
    tenant_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Tenant identifier",
        examples=["glow-salon"],
    )
    type: Literal["selection", "free_text"] = Field(
        ...,
        description="selection (option id) or free_text",
    )
    payload: str = Field(
        ...,
        max_length=2000,
        description="Option id or message text",
        examples=["menu_book"],
    )


class EventResponse(BaseModel):
    """Presentations for the customer plus deliveries for other recipients."""

    step: str = Field(..., description="Dialogue step after the event")
    presentations: list[dict] = Field(default_factory=list)
    notifications: list[dict] = Field(
        default_factory=list,
        description="Messages for other recipients (e.g. admin booking alerts)",
    )


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


def resolve_tenant(
    tenant_id: str,
    registry: TenantRegistry,
) -> TenantConfig:
    tenant = registry.get(tenant_id)
    if tenant is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown tenant: {tenant_id}",
        )
    return tenant


@router.post(
    "",
    response_model=EventResponse,
    status_code=status.HTTP_200_OK,
    summary="Process an inbound event",
    description="Advance the customer's conversation and return what to send back.",
    responses={
        200: {"description": "Successful response"},
        404: {"model": ErrorResponse, "description": "Unknown tenant"},
    },
)
async def process_event(
    request: EventRequest,
    registry: TenantRegistry = Depends(get_tenant_registry),
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> EventResponse:
    """
    Process one inbound event.

    Booking errors never surface here; they become customer-facing
    presentations. Only an unknown tenant is rejected.
    """
    tenant = resolve_tenant(request.tenant_id, registry)

    response = await engine.process(
        InboundEvent(
            customer_id=request.customer_id,
            tenant_id=request.tenant_id,
            type=request.type,
            payload=request.payload,
        ),
        tenant,
    )
    return EventResponse(**response.to_dict())


@router.get(
    "/session/{customer_id}",
    response_model=dict,
    summary="Get session data",
    description="Retrieve the current state of a conversation session.",
    responses={
        200: {"description": "Session data"},
        404: {"model": ErrorResponse, "description": "Session not found"},
    },
)
async def get_session(
    customer_id: str,
    x_tenant_id: str = Header(
        ...,
        alias="X-Tenant-ID",
        description="Tenant identifier",
    ),
    sessions: SessionManager = Depends(get_session_manager),
) -> dict:
    """Get session information."""
    session = await sessions.get(x_tenant_id, customer_id)

    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )

    return session.to_dict()


@router.delete(
    "/session/{customer_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a session",
    description="Forget a conversation; the next message starts at the home menu.",
)
async def delete_session(
    customer_id: str,
    x_tenant_id: str = Header(
        ...,
        alias="X-Tenant-ID",
        description="Tenant identifier",
    ),
    sessions: SessionManager = Depends(get_session_manager),
) -> None:
    """Delete a session."""
    if not await sessions.delete(x_tenant_id, customer_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )
