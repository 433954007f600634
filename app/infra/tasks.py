"""
Scheduled follow-ups.

Durable delayed queue on Redis: a sorted set scored by due time holds the
task ids, a hash holds the payloads. A task is claimed by removing it
from the sorted set, so two workers draining the queue never deliver the
same task twice.

Falls back to an in-process store when Redis is unavailable (tasks are
then lost on restart).
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.exceptions import RedisError

from app.core.dialogue.presentation import Delivery, TextPresentation
from app.core.events import BookingCancelled, BookingCompleted
from app.infra.redis import APP_PREFIX, get_redis

logger = logging.getLogger(__name__)

FOLLOW_UP_DUE_KEY = f"{APP_PREFIX}followups:due"
FOLLOW_UP_PAYLOAD_KEY = f"{APP_PREFIX}followups:payload"

CLAIM_BATCH_SIZE = 100


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def follow_up_id(tenant_id: str, external_event_id: str) -> str:
    """Task id for a booking's follow-up. Stable, so scheduling is idempotent."""
    return f"followup:{tenant_id}:{external_event_id}"


@dataclass
class FollowUpTask:
    """Message to send to a customer at a later time."""

    task_id: str
    tenant_id: str
    to: str
    message: str
    due_at: datetime

    def to_json(self) -> str:
        return json.dumps(
            {
                "task_id": self.task_id,
                "tenant_id": self.tenant_id,
                "to": self.to,
                "message": self.message,
                "due_at": self.due_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "FollowUpTask":
        data = json.loads(raw)
        return cls(
            task_id=data["task_id"],
            tenant_id=data["tenant_id"],
            to=data["to"],
            message=data["message"],
            due_at=datetime.fromisoformat(data["due_at"]),
        )

    def to_delivery(self) -> Delivery:
        return Delivery(
            to=self.to,
            presentation=TextPresentation(body=self.message),
            tenant_id=self.tenant_id,
        )


class FollowUpQueue:
    """
    Redis-backed delayed task queue.

    Keys:
        booking:v1:followups:due      sorted set, task_id -> due epoch
        booking:v1:followups:payload  hash, task_id -> task JSON
    """

    def __init__(self):
        self._in_memory_fallback: dict[str, FollowUpTask] = {}
        self._lock = asyncio.Lock()

    async def schedule(self, task: FollowUpTask) -> bool:
        """
        Schedule a task.

        Args:
            task: Task to schedule

        Returns:
            True if scheduled, False if a task with that id already exists
        """
        redis = await get_redis()

        if redis:
            if not await redis.hsetnx(FOLLOW_UP_PAYLOAD_KEY, task.task_id, task.to_json()):
                logger.debug(f"Follow-up already scheduled: {task.task_id}")
                return False
            await redis.zadd(FOLLOW_UP_DUE_KEY, {task.task_id: task.due_at.timestamp()}, nx=True)
            logger.info(f"Follow-up scheduled: {task.task_id} at {task.due_at.isoformat()}")
            return True

        async with self._lock:
            if task.task_id in self._in_memory_fallback:
                return False
            self._in_memory_fallback[task.task_id] = task
            return True

    async def claim_due(
        self,
        now: Optional[datetime] = None,
        limit: int = CLAIM_BATCH_SIZE,
    ) -> list[FollowUpTask]:
        """
        Remove and return tasks that are due.

        Args:
            now: Current time
            limit: Maximum tasks to claim in one call

        Returns:
            Claimed tasks, oldest first
        """
        now = now or _utcnow()
        redis = await get_redis()

        if redis:
            task_ids = await redis.zrangebyscore(
                FOLLOW_UP_DUE_KEY, "-inf", now.timestamp(), start=0, num=limit
            )
            claimed = []
            for task_id in task_ids:
                # Losing the ZREM race means another worker owns it
                if not await redis.zrem(FOLLOW_UP_DUE_KEY, task_id):
                    continue
                raw = await redis.hget(FOLLOW_UP_PAYLOAD_KEY, task_id)
                await redis.hdel(FOLLOW_UP_PAYLOAD_KEY, task_id)
                if raw is None:
                    logger.warning(f"Follow-up {task_id} had no payload")
                    continue
                claimed.append(FollowUpTask.from_json(raw))
            return claimed

        async with self._lock:
            due = sorted(
                (t for t in self._in_memory_fallback.values() if t.due_at <= now),
                key=lambda t: t.due_at,
            )[:limit]
            for task in due:
                del self._in_memory_fallback[task.task_id]
            return due

    async def cancel(self, task_id: str) -> bool:
        """
        Cancel a scheduled task.

        Returns:
            True if a pending task was removed
        """
        redis = await get_redis()

        if redis:
            removed = await redis.zrem(FOLLOW_UP_DUE_KEY, task_id)
            await redis.hdel(FOLLOW_UP_PAYLOAD_KEY, task_id)
            if removed:
                logger.info(f"Follow-up cancelled: {task_id}")
            return bool(removed)

        async with self._lock:
            return self._in_memory_fallback.pop(task_id, None) is not None

    async def pending(self) -> int:
        """Number of tasks waiting."""
        redis = await get_redis()
        if redis:
            return await redis.zcard(FOLLOW_UP_DUE_KEY)
        return len(self._in_memory_fallback)


class FollowUpScheduler:
    """Booking event subscriber that manages the service's upsell follow-up."""

    def __init__(self, queue: FollowUpQueue):
        self._queue = queue

    async def on_booking_completed(self, event: BookingCompleted) -> None:
        tenant = event.tenant
        service = tenant.get_service(event.service_id)

        if tenant.follow_up_delay_minutes is None or service is None or not service.follow_up_message:
            return
        if event.consent is None or not event.consent.any_granted:
            logger.debug(f"No follow-up for {event.external_event_id}: customer opted out")
            return

        completed_at = event.completed_at or _utcnow()
        task = FollowUpTask(
            task_id=follow_up_id(tenant.tenant_id, event.external_event_id),
            tenant_id=tenant.tenant_id,
            to=event.customer_contact,
            message=service.follow_up_message,
            due_at=completed_at + timedelta(minutes=tenant.follow_up_delay_minutes),
        )
        await self._queue.schedule(task)

    async def on_booking_cancelled(self, event: BookingCancelled) -> None:
        await self._queue.cancel(follow_up_id(event.tenant_id, event.external_event_id))


async def run_due_follow_ups(
    queue: FollowUpQueue,
    now: Optional[datetime] = None,
) -> list[Delivery]:
    """
    Drain due follow-ups into deliveries for the messaging layer.

    Args:
        queue: Follow-up queue
        now: Current time

    Returns:
        One delivery per claimed task
    """
    try:
        tasks = await queue.claim_due(now)
    except RedisError as e:
        logger.error(f"Failed to claim follow-ups: {e}")
        return []

    if tasks:
        logger.info(f"Claimed {len(tasks)} due follow-ups")
    return [task.to_delivery() for task in tasks]


# Singleton
_queue: Optional[FollowUpQueue] = None


def get_follow_up_queue() -> FollowUpQueue:
    """Get singleton FollowUpQueue."""
    global _queue
    if _queue is None:
        _queue = FollowUpQueue()
    return _queue
