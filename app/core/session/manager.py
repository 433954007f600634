"""Redis-based session store for booking conversations."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from redis.exceptions import RedisError, WatchError

from app.config import settings
from app.infra.redis import get_redis, APP_PREFIX
from .models import SessionData
from .state import DialogueStep


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)

logger = logging.getLogger(__name__)

SESSION_PREFIX = f"{APP_PREFIX}session:"

# Optimistic transaction retries before giving up on a contended key
MAX_CAS_ATTEMPTS = 3


class SessionManager:
    """
    Redis-based session manager for conversation state.

    Key pattern: booking:v1:session:{tenant_id}:{customer_id}

    begin_processing / end_processing / save are atomic per key: Redis
    WATCH/MULTI when connected, an asyncio.Lock over the in-memory
    fallback otherwise.
    """

    def __init__(
        self,
        ttl: Optional[int] = None,
        processing_timeout: Optional[int] = None,
    ):
        """Initialize session manager."""
        self._ttl = ttl or settings.redis_session_ttl
        self._processing_timeout = processing_timeout or settings.processing_timeout_seconds
        # Stored as JSON so callers never share mutable state with the store
        self._in_memory_fallback: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _key(self, tenant_id: str, customer_id: str) -> str:
        """Generate Redis key."""
        return f"{SESSION_PREFIX}{tenant_id}:{customer_id}"

    @property
    def processing_timeout(self) -> int:
        return self._processing_timeout

    async def get(self, tenant_id: str, customer_id: str) -> Optional[SessionData]:
        """
        Get session for a conversation.

        Args:
            tenant_id: Tenant identifier
            customer_id: Customer identifier (conversation identity)

        Returns:
            SessionData or None if not found
        """
        key = self._key(tenant_id, customer_id)
        redis = await get_redis()

        if redis:
            data = await redis.get(key)
            return SessionData.from_json(data) if data else None

        data = self._in_memory_fallback.get(key)
        return SessionData.from_json(data) if data else None

    async def get_or_create(self, tenant_id: str, customer_id: str) -> SessionData:
        """
        Get existing session or create a new one at the home step.

        Args:
            tenant_id: Tenant identifier
            customer_id: Customer identifier

        Returns:
            Existing or new SessionData
        """
        session = await self.get(tenant_id, customer_id)
        if session:
            return session

        session = SessionData(customer_id=customer_id, tenant_id=tenant_id)
        session.reset(DialogueStep.HOME)
        await self.save(session)
        logger.debug(f"Session created: {tenant_id}:{customer_id}")
        return session

    def _may_overwrite(self, stored: Optional[SessionData], session: SessionData) -> bool:
        """A held session may only be written by the guard holder."""
        if stored is None or not stored.is_held(_utcnow(), self._processing_timeout):
            return True
        return stored.processing_token == session.processing_token

    async def save(self, session: SessionData) -> bool:
        """
        Save session.

        Refused when another booking attempt holds the session.

        Args:
            session: SessionData to save

        Returns:
            True if saved, False if refused
        """
        session.updated_at = _utcnow()
        key = self._key(session.tenant_id, session.customer_id)
        redis = await get_redis()

        if redis:
            for _ in range(MAX_CAS_ATTEMPTS):
                try:
                    async with redis.pipeline(transaction=True) as pipe:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        stored = SessionData.from_json(raw) if raw else None
                        if not self._may_overwrite(stored, session):
                            await pipe.unwatch()
                            logger.info(f"Save refused, session held: {key}")
                            return False
                        pipe.multi()
                        pipe.setex(key, self._ttl, session.to_json())
                        await pipe.execute()
                        logger.debug(f"Session saved: {key}")
                        return True
                except WatchError:
                    logger.debug(f"Session changed during save, retrying: {key}")
            logger.warning(f"Session save gave up after {MAX_CAS_ATTEMPTS} attempts: {key}")
            return False

        async with self._lock:
            raw = self._in_memory_fallback.get(key)
            stored = SessionData.from_json(raw) if raw else None
            if not self._may_overwrite(stored, session):
                logger.info(f"Save refused, session held: {key}")
                return False
            self._in_memory_fallback[key] = session.to_json()
            return True

    async def reset(self, session: SessionData) -> SessionData:
        """Reset session to home and persist it."""
        session.reset(DialogueStep.HOME)
        await self.save(session)
        return session

    async def delete(self, tenant_id: str, customer_id: str) -> bool:
        """
        Delete a session.

        Returns:
            True if deleted
        """
        key = self._key(tenant_id, customer_id)
        redis = await get_redis()

        if redis:
            deleted = await redis.delete(key)
            if deleted:
                logger.debug(f"Session deleted: {key}")
            return bool(deleted)

        async with self._lock:
            return self._in_memory_fallback.pop(key, None) is not None

    def _claim(self, stored: Optional[SessionData], session: SessionData, now: datetime) -> Optional[SessionData]:
        """Flip the guard on the stored copy. None if it is held by someone else."""
        if stored is not None and stored.is_held(now, self._processing_timeout):
            return None

        if stored is not None and stored.is_processing:
            logger.warning(
                f"Abandoned processing guard taken over: {session.tenant_id}:{session.customer_id}"
            )

        token = str(uuid4())
        session.is_processing = True
        session.processing_token = token
        session.processing_started_at = now
        session.updated_at = now
        return session

    async def begin_processing(
        self,
        session: SessionData,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Atomically acquire the per-conversation processing guard.

        A guard older than the processing timeout is treated as abandoned.

        Args:
            session: Session about to be committed
            now: Current time

        Returns:
            Processing token, or None if another attempt holds the guard
        """
        now = now or _utcnow()
        key = self._key(session.tenant_id, session.customer_id)
        redis = await get_redis()

        if redis:
            try:
                async with redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    stored = SessionData.from_json(raw) if raw else None
                    if stored is not None and stored.is_held(now, self._processing_timeout):
                        await pipe.unwatch()
                        logger.info(f"Processing guard already held: {key}")
                        return None
                    claimed = self._claim(stored, session, now)
                    pipe.multi()
                    pipe.setex(key, self._ttl, claimed.to_json())
                    await pipe.execute()
            except WatchError:
                # Someone else wrote the session between WATCH and EXEC
                logger.info(f"Processing guard contended: {key}")
                session.is_processing = False
                session.processing_token = None
                session.processing_started_at = None
                return None
            return session.processing_token

        async with self._lock:
            raw = self._in_memory_fallback.get(key)
            stored = SessionData.from_json(raw) if raw else None
            claimed = self._claim(stored, session, now)
            if claimed is None:
                logger.info(f"Processing guard already held: {key}")
                return None
            self._in_memory_fallback[key] = claimed.to_json()
            return claimed.processing_token

    async def end_processing(self, session: SessionData) -> None:
        """
        Release the processing guard held by this session.

        Only the stored flag is cleared; the caller saves the rest of the
        session afterwards.
        """
        token = session.processing_token
        key = self._key(session.tenant_id, session.customer_id)

        session.is_processing = False
        session.processing_token = None
        session.processing_started_at = None

        if token is None:
            return

        redis = await get_redis()

        if redis:
            for _ in range(MAX_CAS_ATTEMPTS):
                try:
                    async with redis.pipeline(transaction=True) as pipe:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        stored = SessionData.from_json(raw) if raw else None
                        if stored is None or stored.processing_token != token:
                            await pipe.unwatch()
                            return
                        stored.is_processing = False
                        stored.processing_token = None
                        stored.processing_started_at = None
                        pipe.multi()
                        pipe.setex(key, self._ttl, stored.to_json())
                        await pipe.execute()
                        return
                except WatchError:
                    continue
                except RedisError as e:
                    logger.error(f"Failed to release processing guard {key}: {e}")
                    return
            logger.error(f"Could not release processing guard {key}; it will expire")
            return

        async with self._lock:
            raw = self._in_memory_fallback.get(key)
            stored = SessionData.from_json(raw) if raw else None
            if stored is None or stored.processing_token != token:
                return
            stored.is_processing = False
            stored.processing_token = None
            stored.processing_started_at = None
            self._in_memory_fallback[key] = stored.to_json()


# Singleton
_manager: Optional[SessionManager] = None


async def get_session_manager() -> SessionManager:
    """Get singleton SessionManager."""
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager
