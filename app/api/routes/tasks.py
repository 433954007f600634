"""
Scheduled Task Endpoints.

Called by an external scheduler (cron, Cloud Scheduler...) to drain due
follow-ups. Claiming is atomic per task, so overlapping runs are safe.
"""

import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from app.infra.tasks import FollowUpQueue, get_follow_up_queue, run_due_follow_ups

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["Tasks"])


class FollowUpRunResponse(BaseModel):
    """Deliveries claimed by this run."""

    claimed: int
    deliveries: list[dict]


@router.post(
    "/follow-ups/run",
    response_model=FollowUpRunResponse,
    status_code=status.HTTP_200_OK,
    summary="Run due follow-ups",
    description="Claim every due follow-up and return the messages to send.",
)
async def run_follow_ups(
    queue: FollowUpQueue = Depends(get_follow_up_queue),
) -> FollowUpRunResponse:
    deliveries = await run_due_follow_ups(queue)
    return FollowUpRunResponse(
        claimed=len(deliveries),
        deliveries=[d.to_dict() for d in deliveries],
    )
