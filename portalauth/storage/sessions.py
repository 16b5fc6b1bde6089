from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Protocol, Set

from portalauth.logging import get_logger
from portalauth.storage.models import DeviceInfo, Session

logger = get_logger(__name__)

SESSION_TTL_SECONDS = 30 * 24 * 60 * 60
TERMINATED_SESSION_TTL_SECONDS = 60 * 60


class KeyValueStore(Protocol):
    """Primitives shared by ``RedisCache`` and ``MemoryCache``."""

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def exists(self, key: str) -> bool: ...

    async def hset_with_ttl(
        self, key: str, mapping: Mapping[str, str], ttl_seconds: int
    ) -> None: ...

    async def hgetall(self, key: str) -> Dict[str, str]: ...

    async def hset_if_exists(self, key: str, mapping: Mapping[str, str]) -> bool: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def sadd(self, key: str, member: str) -> None: ...

    async def srem(self, key: str, member: str) -> None: ...

    async def smembers(self, key: str) -> Set[str]: ...


class SessionStore:
    """Session records and per-account active-session sets in the shared store.

    Each session is one hash keyed by its id, with an absolute TTL counted
    from creation. The owner's active set is kept in step with ``is_active``
    but not transactionally: members that point at missing or terminated
    records are pruned by ``list_active``.
    """

    def __init__(
        self,
        cache: KeyValueStore,
        *,
        session_prefix: str = "session:",
        user_sessions_prefix: str = "user_sessions:",
        session_ttl_seconds: int = SESSION_TTL_SECONDS,
        terminated_ttl_seconds: int = TERMINATED_SESSION_TTL_SECONDS,
    ) -> None:
        self.cache = cache
        self.session_prefix = session_prefix
        self.user_sessions_prefix = user_sessions_prefix
        self.session_ttl_seconds = session_ttl_seconds
        self.terminated_ttl_seconds = terminated_ttl_seconds

    def _session_key(self, session_id: str) -> str:
        return f"{self.session_prefix}{session_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.user_sessions_prefix}{user_id}"

    async def create_session(
        self, user_id: str, device: Optional[DeviceInfo] = None
    ) -> Session:
        session = Session.new(user_id, device)
        await self.cache.hset_with_ttl(
            self._session_key(session.session_id),
            session.to_hash(),
            self.session_ttl_seconds,
        )
        await self.cache.sadd(self._user_key(user_id), session.session_id)
        logger.info(
            "session_created",
            session_id=session.session_id,
            user_id=user_id,
            device_info=session.device_info,
        )
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        data = await self.cache.hgetall(self._session_key(session_id))
        return Session.from_hash(data)

    async def touch_activity(self, session_id: str) -> bool:
        """Stamp ``last_activity``; the TTL keeps counting from creation."""
        return await self.cache.hset_if_exists(
            self._session_key(session_id),
            {"last_activity": datetime.now(timezone.utc).isoformat()},
        )

    async def record_tokens(
        self,
        session_id: str,
        *,
        access_token_id: str,
        access_expires_at: int,
        refresh_token_id: Optional[str] = None,
        refresh_expires_at: Optional[int] = None,
    ) -> bool:
        fields = {
            "access_token_id": access_token_id,
            "access_expires_at": str(access_expires_at),
        }
        if refresh_token_id:
            fields["refresh_token_id"] = refresh_token_id
            fields["refresh_expires_at"] = str(refresh_expires_at or "")
        return await self.cache.hset_if_exists(self._session_key(session_id), fields)

    async def list_active(self, user_id: str) -> List[Session]:
        user_key = self._user_key(user_id)
        active: List[Session] = []
        for session_id in await self.cache.smembers(user_key):
            session = await self.get_session(session_id)
            if session and session.is_active and session.user_id == user_id:
                active.append(session)
                continue
            await self.cache.srem(user_key, session_id)
            logger.debug("stale_session_pruned", session_id=session_id, user_id=user_id)
        active.sort(key=lambda s: s.login_time)
        return active

    async def terminate(self, session_id: str) -> bool:
        """Deactivate a session and keep its record briefly for audit.

        Returns False without writing anything when the session is missing or
        already terminated.
        """
        session = await self.get_session(session_id)
        if not session or not session.is_active:
            return False
        key = self._session_key(session_id)
        if not await self.cache.hset_if_exists(key, {"is_active": "false"}):
            return False
        await self.cache.srem(self._user_key(session.user_id), session_id)
        await self.cache.expire(key, self.terminated_ttl_seconds)
        logger.info("session_terminated", session_id=session_id, user_id=session.user_id)
        return True

    async def terminate_all(self, user_id: str) -> int:
        # Not atomic: a session created by a concurrent login after
        # list_active() returns stays active. Only the enumerated members are
        # removed from the set, so that session stays listed for the next login.
        user_key = self._user_key(user_id)
        terminated = 0
        for session in await self.list_active(user_id):
            if await self.terminate(session.session_id):
                terminated += 1
            else:
                await self.cache.srem(user_key, session.session_id)
        logger.info("user_sessions_terminated", user_id=user_id, count=terminated)
        return terminated
