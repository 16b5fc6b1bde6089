import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any portalauth import reads the environment
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from portalauth.config import Settings, reset_settings_cache  # noqa: E402
from portalauth.service.auth import AuthService  # noqa: E402
from portalauth.service.passwords import PasswordHasher  # noqa: E402
from portalauth.service.tokens import TokenAuthority  # noqa: E402
from portalauth.storage.memory import MemoryCache, MemoryStore  # noqa: E402
from portalauth.storage.revocation import RevocationList  # noqa: E402
from portalauth.storage.sessions import SessionStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Manually advanced clock shared by the cache TTLs and token expiry."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def session_store(cache):
    return SessionStore(cache)


@pytest.fixture
def revocations(cache):
    return RevocationList(cache)


@pytest.fixture
def token_authority(clock):
    return TokenAuthority(
        TEST_SECRET,
        issuer="portalauth",
        audience="portal",
        access_ttl_seconds=15 * 60,
        refresh_ttl_seconds=24 * 60 * 60,
        clock=clock,
    )


@pytest.fixture
def password_hasher():
    return fast_hasher()


@pytest.fixture
def account_store():
    return MemoryStore()


@pytest.fixture
def auth_service(account_store, session_store, revocations, token_authority, password_hasher):
    return AuthService(
        account_store,
        session_store,
        revocations,
        token_authority,
        hasher=password_hasher,
    )


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        test_mode=True,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
