from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from portalauth.config import Settings, get_settings
from portalauth.logging import get_logger
from portalauth.service.auth import AccountStore, AuthService
from portalauth.service.passwords import PasswordHasher
from portalauth.service.tokens import TokenAuthority
from portalauth.storage.memory import MemoryCache, MemoryStore
from portalauth.storage.redis_cache import RedisCache
from portalauth.storage.revocation import RevocationList
from portalauth.storage.sessions import SessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds the stores and services for one app instance and owns their lifecycle.

    Nothing here is a module-level singleton: the app factory constructs a
    Runtime and hands it to request handlers through ``app.state``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Union[RedisCache, MemoryCache, None] = None,
        accounts: Optional[AccountStore] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if cache is not None:
            self.cache = cache
        elif self.settings.use_memory_store:
            self.cache = MemoryCache()
        else:
            self.cache = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.redis_socket_timeout,
            )
        logger.info(
            "runtime_cache_initialized",
            cache_type=type(self.cache).__name__,
            redis_url=(
                None
                if isinstance(self.cache, MemoryCache)
                else _mask_url_password(self.settings.redis_url)
            ),
        )

        self.accounts: AccountStore = accounts or MemoryStore()
        self.sessions = SessionStore(
            self.cache,
            session_prefix=self.settings.session_key_prefix,
            user_sessions_prefix=self.settings.user_sessions_key_prefix,
            session_ttl_seconds=self.settings.session_ttl_seconds,
            terminated_ttl_seconds=self.settings.terminated_session_ttl_seconds,
        )
        self.revocations = RevocationList(
            self.cache, prefix=self.settings.blacklist_key_prefix
        )
        self.tokens = TokenAuthority(
            self.settings.jwt_secret or "",
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            leeway_seconds=self.settings.token_leeway_seconds,
        )
        self.auth = AuthService(
            self.accounts,
            self.sessions,
            self.revocations,
            self.tokens,
            hasher=hasher,
            revoke_access_on_refresh=self.settings.revoke_access_on_refresh,
        )

    async def connect(self) -> None:
        """Fail fast when the key-value store is unreachable."""
        await self.cache.connect()
        logger.info("runtime_ready")

    async def close(self) -> None:
        await self.cache.close()
        logger.info("runtime_closed")

    async def healthy(self) -> bool:
        return await self.cache.ping()
