from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Mapping, Optional, Set

from portalauth.logging import get_logger
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import Account


class MemoryCache:
    """In-process stand-in for Redis with per-key TTLs.

    Used when ``USE_MEMORY_STORE`` is set and in tests. Expiry is evaluated
    lazily against ``clock`` (seconds, monotonic by default), the same way
    Redis treats an expired key as absent.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._values: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        self._data_lock = threading.RLock()

    def _alive(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._values

    def _set_ttl(self, key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            self._values.pop(key, None)
            self._expires.pop(key, None)
            return
        self._expires[key] = self._clock() + ttl_seconds

    def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, or None for a missing or persistent key."""
        with self._data_lock:
            if not self._alive(key) or key not in self._expires:
                return None
            return self._expires[key] - self._clock()

    async def connect(self) -> None:
        self.logger.info("memory_cache_ready")

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._data_lock:
            self._values.clear()
            self._expires.clear()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._data_lock:
            self._values[key] = value
            self._set_ttl(key, ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            if not self._alive(key):
                return None
            value = self._values[key]
            return value if isinstance(value, str) else None

    async def exists(self, key: str) -> bool:
        with self._data_lock:
            return self._alive(key)

    async def hset_with_ttl(
        self, key: str, mapping: Mapping[str, str], ttl_seconds: int
    ) -> None:
        with self._data_lock:
            current = self._values.get(key) if self._alive(key) else None
            merged = dict(current) if isinstance(current, dict) else {}
            merged.update(mapping)
            self._values[key] = merged
            self._set_ttl(key, ttl_seconds)

    async def hgetall(self, key: str) -> Dict[str, str]:
        with self._data_lock:
            if not self._alive(key):
                return {}
            value = self._values[key]
            return dict(value) if isinstance(value, dict) else {}

    async def hset_if_exists(self, key: str, mapping: Mapping[str, str]) -> bool:
        with self._data_lock:
            if not self._alive(key) or not isinstance(self._values[key], dict):
                return False
            self._values[key].update(mapping)
            return True

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._data_lock:
            if not self._alive(key):
                return False
            self._set_ttl(key, ttl_seconds)
            return True

    async def sadd(self, key: str, member: str) -> None:
        with self._data_lock:
            current = self._values.get(key) if self._alive(key) else None
            members = current if isinstance(current, set) else set()
            members.add(member)
            self._values[key] = members

    async def srem(self, key: str, member: str) -> None:
        with self._data_lock:
            if not self._alive(key):
                return
            members = self._values[key]
            if isinstance(members, set):
                members.discard(member)
                # Redis drops a set once its last member is removed
                if not members:
                    self._values.pop(key, None)
                    self._expires.pop(key, None)

    async def smembers(self, key: str) -> Set[str]:
        with self._data_lock:
            if not self._alive(key):
                return set()
            members = self._values[key]
            return set(members) if isinstance(members, set) else set()


class MemoryStore:
    """In-memory account repository."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._data_lock = threading.RLock()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Account:
        normalized = self._normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(
                normalized,
                password_hash,
                role=role,
                first_name=first_name,
                last_name=last_name,
            )
            self.accounts[account.id] = account
            self.logger.debug("account_created", user_id=account.id)
            return replace(account)

    def get_account(self, user_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(user_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = self._normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return replace(account) if account else None

    def update_account(self, user_id: str, **fields: Any) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(user_id)
            if not account:
                return None
            for name, value in fields.items():
                if not hasattr(account, name) or name == "id":
                    raise ValueError(f"unknown account field: {name}")
                setattr(account, name, value)
            return replace(account)

    def clear_current_session(
        self, user_id: str, session_id: Optional[str] = None
    ) -> bool:
        """Clear ``current_session_id``; when ``session_id`` is given, only if it matches."""
        with self._data_lock:
            account = self.accounts.get(user_id)
            if not account or account.current_session_id is None:
                return False
            if session_id is not None and account.current_session_id != session_id:
                return False
            account.current_session_id = None
            return True

