from __future__ import annotations

from portalauth.logging import get_logger
from portalauth.storage.sessions import KeyValueStore

logger = get_logger(__name__)

_REVOKED_MARKER = "blacklisted"


class RevocationList:
    """Denylist of token ids, each entry living only as long as its token."""

    def __init__(self, cache: KeyValueStore, *, prefix: str = "blacklist:") -> None:
        self.cache = cache
        self.prefix = prefix

    def _key(self, token_id: str) -> str:
        return f"{self.prefix}{token_id}"

    async def revoke(self, token_id: str, ttl_seconds: int) -> bool:
        """Deny ``token_id`` for ``ttl_seconds``.

        A token that has already expired needs no entry; returns False and
        writes nothing when ``ttl_seconds`` is not positive.
        """
        if not token_id or ttl_seconds <= 0:
            return False
        await self.cache.set(self._key(token_id), _REVOKED_MARKER, int(ttl_seconds))
        logger.info("token_revoked", token_id=token_id, ttl_seconds=int(ttl_seconds))
        return True

    async def is_revoked(self, token_id: str) -> bool:
        if not token_id:
            return False
        return await self.cache.exists(self._key(token_id))
