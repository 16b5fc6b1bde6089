"""Tests for session records and per-account active-session sets."""

import pytest

from portalauth.storage.memory import MemoryCache
from portalauth.storage.models import DeviceInfo, Session
from portalauth.storage.sessions import (
    SESSION_TTL_SECONDS,
    TERMINATED_SESSION_TTL_SECONDS,
    SessionStore,
)


@pytest.fixture
def device():
    return DeviceInfo(
        device_info="Chrome Browser", ip_address="10.0.0.1", user_agent="Mozilla/5.0 Chrome"
    )


class LateJoinCache(MemoryCache):
    """Runs ``on_read`` once, after a set has been read but before it is returned."""

    def __init__(self) -> None:
        super().__init__()
        self.on_read = None

    async def smembers(self, key):
        members = await super().smembers(key)
        if self.on_read is not None:
            hook, self.on_read = self.on_read, None
            await hook()
        return members


class TestCreateAndGet:
    async def test_create_session_is_active_and_retrievable(self, session_store, device):
        session = await session_store.create_session("u1", device)

        loaded = await session_store.get_session(session.session_id)
        assert loaded is not None
        assert loaded.user_id == "u1"
        assert loaded.is_active is True
        assert loaded.device_info == "Chrome Browser"
        assert loaded.ip_address == "10.0.0.1"

    async def test_create_session_sets_absolute_ttl(self, session_store, cache):
        session = await session_store.create_session("u1")

        assert cache.ttl(f"session:{session.session_id}") == SESSION_TTL_SECONDS

    async def test_create_session_adds_to_active_set(self, session_store, cache):
        session = await session_store.create_session("u1")

        assert await cache.smembers("user_sessions:u1") == {session.session_id}

    async def test_default_device_metadata(self, session_store):
        session = await session_store.create_session("u1")

        loaded = await session_store.get_session(session.session_id)
        assert loaded.device_info == "Unknown Device"
        assert loaded.ip_address == "Unknown IP"
        assert loaded.user_agent == "Unknown User Agent"

    async def test_session_ids_are_unique(self, session_store):
        ids = {(await session_store.create_session("u1")).session_id for _ in range(20)}

        assert len(ids) == 20

    async def test_missing_session(self, session_store):
        assert await session_store.get_session("nope") is None
        assert await session_store.get_session("") is None

    async def test_session_purged_after_ttl(self, session_store, clock):
        session = await session_store.create_session("u1")
        clock.advance(SESSION_TTL_SECONDS)

        assert await session_store.get_session(session.session_id) is None


class TestTouchActivity:
    async def test_touch_updates_last_activity_without_extending_ttl(
        self, session_store, cache, clock
    ):
        session = await session_store.create_session("u1")
        key = f"session:{session.session_id}"
        await cache.hset_if_exists(key, {"last_activity": "2000-01-01T00:00:00+00:00"})
        clock.advance(100)

        assert await session_store.touch_activity(session.session_id) is True

        loaded = await session_store.get_session(session.session_id)
        assert loaded.last_activity.year > 2000
        assert cache.ttl(key) == SESSION_TTL_SECONDS - 100

    async def test_touch_does_not_resurrect_purged_session(self, session_store, cache):
        assert await session_store.touch_activity("gone") is False
        assert await cache.hgetall("session:gone") == {}


class TestListActive:
    async def test_orders_by_login_time(self, session_store, cache):
        second = await session_store.create_session("u1")
        first = await session_store.create_session("u1")
        await cache.hset_if_exists(
            f"session:{first.session_id}", {"login_time": "2024-01-01T00:00:00+00:00"}
        )
        await cache.hset_if_exists(
            f"session:{second.session_id}", {"login_time": "2024-06-01T00:00:00+00:00"}
        )

        active = await session_store.list_active("u1")

        assert [s.session_id for s in active] == [first.session_id, second.session_id]

    async def test_prunes_missing_members(self, session_store, cache):
        live = await session_store.create_session("u1")
        await cache.sadd("user_sessions:u1", "ghost")

        active = await session_store.list_active("u1")

        assert [s.session_id for s in active] == [live.session_id]
        assert "ghost" not in await cache.smembers("user_sessions:u1")

    async def test_prunes_inactive_members(self, session_store, cache):
        live = await session_store.create_session("u1")
        stale = await session_store.create_session("u1")
        await cache.hset_if_exists(f"session:{stale.session_id}", {"is_active": "false"})

        active = await session_store.list_active("u1")

        assert [s.session_id for s in active] == [live.session_id]
        assert await cache.smembers("user_sessions:u1") == {live.session_id}

    async def test_ignores_sessions_of_other_accounts(self, session_store, cache):
        foreign = await session_store.create_session("u2")
        await cache.sadd("user_sessions:u1", foreign.session_id)

        assert await session_store.list_active("u1") == []
        assert [s.session_id for s in await session_store.list_active("u2")] == [
            foreign.session_id
        ]

    async def test_empty_for_unknown_account(self, session_store):
        assert await session_store.list_active("nobody") == []


class TestTerminate:
    async def test_terminate_deactivates_and_shortens_ttl(self, session_store, cache):
        session = await session_store.create_session("u1")

        assert await session_store.terminate(session.session_id) is True

        loaded = await session_store.get_session(session.session_id)
        assert loaded.is_active is False
        assert cache.ttl(f"session:{session.session_id}") == TERMINATED_SESSION_TTL_SECONDS
        assert await cache.smembers("user_sessions:u1") == set()

    async def test_terminated_record_is_purged_after_retention(self, session_store, clock):
        session = await session_store.create_session("u1")
        await session_store.terminate(session.session_id)
        clock.advance(TERMINATED_SESSION_TTL_SECONDS)

        assert await session_store.get_session(session.session_id) is None

    async def test_terminate_twice_is_noop(self, session_store, cache, clock):
        session = await session_store.create_session("u1")
        await session_store.terminate(session.session_id)
        clock.advance(600)

        assert await session_store.terminate(session.session_id) is False
        # Retention window is not restarted
        assert cache.ttl(f"session:{session.session_id}") == TERMINATED_SESSION_TTL_SECONDS - 600

    async def test_terminate_missing_session(self, session_store):
        assert await session_store.terminate("gone") is False

    async def test_terminate_all(self, session_store, cache):
        first = await session_store.create_session("u1")
        second = await session_store.create_session("u1")
        other = await session_store.create_session("u2")

        assert await session_store.terminate_all("u1") == 2

        assert (await session_store.get_session(first.session_id)).is_active is False
        assert (await session_store.get_session(second.session_id)).is_active is False
        assert (await session_store.get_session(other.session_id)).is_active is True
        assert await cache.exists("user_sessions:u1") is False

    async def test_terminate_all_without_sessions(self, session_store):
        assert await session_store.terminate_all("nobody") == 0

    async def test_terminate_all_keeps_session_added_meanwhile(self):
        cache = LateJoinCache()
        store = SessionStore(cache)
        first = await store.create_session("u1")
        late = []

        async def concurrent_login():
            late.append(await store.create_session("u1"))

        cache.on_read = concurrent_login

        assert await store.terminate_all("u1") == 1

        assert (await store.get_session(first.session_id)).is_active is False
        assert (await store.get_session(late[0].session_id)).is_active is True
        assert await cache.smembers("user_sessions:u1") == {late[0].session_id}


class TestRecordTokens:
    async def test_record_tokens_persists_ids(self, session_store):
        session = await session_store.create_session("u1")

        await session_store.record_tokens(
            session.session_id,
            access_token_id="a1",
            access_expires_at=100,
            refresh_token_id="r1",
            refresh_expires_at=200,
        )

        loaded = await session_store.get_session(session.session_id)
        assert loaded.access_token_id == "a1"
        assert loaded.access_expires_at == 100
        assert loaded.refresh_token_id == "r1"
        assert loaded.refresh_expires_at == 200

    async def test_record_access_only_keeps_refresh(self, session_store):
        session = await session_store.create_session("u1")
        await session_store.record_tokens(
            session.session_id,
            access_token_id="a1",
            access_expires_at=100,
            refresh_token_id="r1",
            refresh_expires_at=200,
        )

        await session_store.record_tokens(
            session.session_id, access_token_id="a2", access_expires_at=300
        )

        loaded = await session_store.get_session(session.session_id)
        assert loaded.access_token_id == "a2"
        assert loaded.refresh_token_id == "r1"

    async def test_record_tokens_on_missing_session(self, session_store):
        assert (
            await session_store.record_tokens(
                "gone", access_token_id="a1", access_expires_at=1
            )
            is False
        )


class TestPrefixes:
    async def test_custom_prefixes(self, cache):
        store = SessionStore(cache, session_prefix="s/", user_sessions_prefix="us/")
        session = await store.create_session("u1")

        assert await cache.exists(f"s/{session.session_id}") is True
        assert await cache.smembers("us/u1") == {session.session_id}


class TestSessionModel:
    def test_from_hash_requires_identity(self):
        assert Session.from_hash({}) is None
        assert Session.from_hash({"session_id": "s1"}) is None
        assert Session.from_hash({"user_id": "u1"}) is None

    def test_hash_round_trip(self):
        session = Session.new("u1", DeviceInfo(device_info="Tablet"))

        restored = Session.from_hash(session.to_hash())

        assert restored.session_id == session.session_id
        assert restored.device_info == "Tablet"
        assert restored.is_active is True
        assert restored.login_time == session.login_time
