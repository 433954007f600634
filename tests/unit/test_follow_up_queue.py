"""Tests for scheduled follow-ups."""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from redis.exceptions import RedisError

from app.core.events import BookingCancelled, BookingCompleted
from app.core.session.models import Consent
from app.infra.tasks import (
    FOLLOW_UP_DUE_KEY,
    FOLLOW_UP_PAYLOAD_KEY,
    FollowUpQueue,
    FollowUpScheduler,
    FollowUpTask,
    follow_up_id,
    run_due_follow_ups,
)


START = datetime(2025, 7, 22, 10, 0, tzinfo=timezone.utc)


def make_task(task_id: str, due_at: datetime) -> FollowUpTask:
    return FollowUpTask(
        task_id=task_id,
        tenant_id="glow-salon",
        to="447700900123",
        message="Time for a trim?",
        due_at=due_at,
    )


@pytest.fixture
def queue():
    """Queue running on its in-memory fallback."""
    with patch("app.infra.tasks.get_redis", return_value=None):
        yield FollowUpQueue()


class TestFollowUpQueue:
    """Test FollowUpQueue on the in-memory fallback."""

    @pytest.mark.asyncio
    async def test_schedule_is_idempotent(self, queue, now):
        task = make_task("followup:glow-salon:evt1", now)

        assert await queue.schedule(task) is True
        assert await queue.schedule(task) is False
        assert await queue.pending() == 1

    @pytest.mark.asyncio
    async def test_claim_due_only(self, queue, now):
        await queue.schedule(make_task("late", now + timedelta(hours=2)))
        await queue.schedule(make_task("second", now - timedelta(minutes=5)))
        await queue.schedule(make_task("first", now - timedelta(hours=1)))

        claimed = await queue.claim_due(now)

        assert [t.task_id for t in claimed] == ["first", "second"]
        assert await queue.pending() == 1
        assert await queue.claim_due(now) == []

    @pytest.mark.asyncio
    async def test_claim_limit(self, queue, now):
        for i in range(3):
            await queue.schedule(make_task(f"t{i}", now - timedelta(minutes=i)))

        claimed = await queue.claim_due(now, limit=2)

        assert len(claimed) == 2
        assert await queue.pending() == 1

    @pytest.mark.asyncio
    async def test_cancel(self, queue, now):
        await queue.schedule(make_task("t1", now))

        assert await queue.cancel("t1") is True
        assert await queue.cancel("t1") is False
        assert await queue.claim_due(now) == []

    @pytest.mark.asyncio
    async def test_run_due_follow_ups(self, queue, now):
        await queue.schedule(make_task("t1", now))

        deliveries = await run_due_follow_ups(queue, now)

        assert len(deliveries) == 1
        assert deliveries[0].to == "447700900123"
        assert deliveries[0].tenant_id == "glow-salon"
        assert deliveries[0].presentation.body == "Time for a trim?"

    def test_task_json(self, now):
        task = make_task("t1", now)

        assert FollowUpTask.from_json(task.to_json()) == task


class TestFollowUpQueueRedis:
    """Test the Redis-backed queue."""

    @pytest.fixture
    def mock_redis(self):
        """Create mock Redis client."""
        mock = AsyncMock()
        mock.hsetnx = AsyncMock(return_value=1)
        mock.zadd = AsyncMock(return_value=1)
        mock.zrangebyscore = AsyncMock(return_value=[])
        mock.zrem = AsyncMock(return_value=1)
        mock.hget = AsyncMock(return_value=None)
        mock.hdel = AsyncMock(return_value=1)
        mock.zcard = AsyncMock(return_value=0)
        return mock

    @pytest.mark.asyncio
    async def test_schedule(self, mock_redis, now):
        task = make_task("t1", now)

        with patch("app.infra.tasks.get_redis", return_value=mock_redis):
            assert await FollowUpQueue().schedule(task) is True

        mock_redis.hsetnx.assert_called_once_with(FOLLOW_UP_PAYLOAD_KEY, "t1", task.to_json())
        mock_redis.zadd.assert_called_once_with(FOLLOW_UP_DUE_KEY, {"t1": now.timestamp()}, nx=True)

    @pytest.mark.asyncio
    async def test_schedule_duplicate(self, mock_redis, now):
        mock_redis.hsetnx = AsyncMock(return_value=0)

        with patch("app.infra.tasks.get_redis", return_value=mock_redis):
            assert await FollowUpQueue().schedule(make_task("t1", now)) is False

        mock_redis.zadd.assert_not_called()

    @pytest.mark.asyncio
    async def test_claim_skips_lost_race(self, mock_redis, now):
        """A task another worker removed first is not delivered again."""
        mock_redis.zrangebyscore = AsyncMock(return_value=["t1", "t2"])
        mock_redis.zrem = AsyncMock(side_effect=[0, 1])
        mock_redis.hget = AsyncMock(return_value=make_task("t2", now).to_json())

        with patch("app.infra.tasks.get_redis", return_value=mock_redis):
            claimed = await FollowUpQueue().claim_due(now)

        assert [t.task_id for t in claimed] == ["t2"]
        mock_redis.hget.assert_called_once_with(FOLLOW_UP_PAYLOAD_KEY, "t2")

    @pytest.mark.asyncio
    async def test_redis_error_yields_nothing(self, mock_redis, now):
        mock_redis.zrangebyscore = AsyncMock(side_effect=RedisError("down"))

        with patch("app.infra.tasks.get_redis", return_value=mock_redis):
            assert await run_due_follow_ups(FollowUpQueue(), now) == []


class TestFollowUpScheduler:
    """Test the booking event subscriber."""

    def booking(self, tenant, now, consent=None, service_id="haircut") -> BookingCompleted:
        return BookingCompleted(
            tenant=tenant,
            appointment_id="appt1",
            external_event_id="evt1",
            customer_contact="447700900123",
            customer_name="Jane",
            service_id=service_id,
            provider_id="anna",
            start=START,
            end=START + timedelta(minutes=30),
            consent=consent,
            revenue=25.0,
            completed_at=now,
        )

    @pytest.mark.asyncio
    async def test_schedules_after_delay(self, queue, tenant, now):
        scheduler = FollowUpScheduler(queue)
        consent = Consent(appointment_reminders=True, consented_at=now)

        await scheduler.on_booking_completed(self.booking(tenant, now, consent))

        assert await queue.claim_due(now + timedelta(days=20)) == []
        claimed = await queue.claim_due(now + timedelta(days=21))
        assert [t.task_id for t in claimed] == [follow_up_id("glow-salon", "evt1")]
        assert claimed[0].message == "Time for a trim? Book your next haircut with us."

    @pytest.mark.asyncio
    async def test_no_follow_up_without_consent(self, queue, tenant, now):
        scheduler = FollowUpScheduler(queue)

        await scheduler.on_booking_completed(self.booking(tenant, now, Consent(consented_at=now)))

        assert await queue.pending() == 0

    @pytest.mark.asyncio
    async def test_no_follow_up_without_message(self, queue, tenant, now):
        scheduler = FollowUpScheduler(queue)
        consent = Consent(appointment_reminders=True, consented_at=now)

        await scheduler.on_booking_completed(self.booking(tenant, now, consent, service_id="colour"))

        assert await queue.pending() == 0

    @pytest.mark.asyncio
    async def test_cancellation_removes_follow_up(self, queue, tenant, now):
        scheduler = FollowUpScheduler(queue)
        consent = Consent(birthday_messages=True, consented_at=now)
        await scheduler.on_booking_completed(self.booking(tenant, now, consent))

        await scheduler.on_booking_cancelled(
            BookingCancelled(tenant=tenant, external_event_id="evt1", calendar_id="cal-anna")
        )

        assert await queue.pending() == 0
