"""Tests for the session lifecycle manager.

Time-dependent checks move stored timestamps into the past instead of
sleeping.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from tenantgate.service.sessions import SessionLifecycleManager
from tenantgate.storage.models import DeviceInfo, UserCredential, new_id


@pytest.fixture
def sessions(memory_store, settings):
    return SessionLifecycleManager(memory_store, None, settings)


@pytest.fixture
def user_id(memory_store):
    user = UserCredential(id=new_id(), email="sess@example.com", password_hash="x")
    return memory_store.create_user(user).id


def _age(memory_store, session_id, **deltas):
    stored = memory_store.sessions[session_id]
    now = datetime.now(timezone.utc)
    changes = {name: now - delta for name, delta in deltas.items()}
    memory_store.sessions[session_id] = replace(stored, **changes)


class FakeRevocationCache:
    def __init__(self, fail=False):
        self.revoked = set()
        self.activity = {}
        self.fail = fail

    async def is_session_revoked(self, session_id):
        if self.fail:
            raise ConnectionError("redis down")
        return session_id in self.revoked

    async def mark_session_revoked(self, session_id, expires_at):
        if self.fail:
            raise ConnectionError("redis down")
        self.revoked.add(session_id)

    async def mark_sessions_revoked(self, session_ids, ttl_seconds):
        if self.fail:
            raise ConnectionError("redis down")
        self.revoked.update(session_ids)

    async def update_session_activity(self, session_id, ttl_seconds=86400):
        if self.fail:
            raise ConnectionError("redis down")
        self.activity[session_id] = datetime.now(timezone.utc)

    async def get_session_activity(self, session_id):
        if self.fail:
            raise ConnectionError("redis down")
        return self.activity.get(session_id)


class TestSessionCreation:
    async def test_new_session_is_active(self, sessions, user_id, settings):
        device = DeviceInfo(ip_address="10.0.0.1", user_agent="pytest")
        session = await sessions.create_session(user_id, device)

        assert session.is_active and not session.revoked
        assert session.ip_address == "10.0.0.1"
        lifetime = session.expires_at - session.created_at
        assert lifetime == timedelta(minutes=settings.session_ttl_minutes)
        assert await sessions.is_session_valid(user_id, session.id)

    async def test_wrong_user_is_invalid(self, sessions, user_id):
        session = await sessions.create_session(user_id)

        assert not await sessions.is_session_valid(new_id(), session.id)
        assert not await sessions.is_session_valid(user_id, new_id())


class TestSessionExpiry:
    async def test_inactive_session_is_revoked_on_check(self, sessions, memory_store, user_id):
        """An idle session is revoked by the check that notices it."""
        session = await sessions.create_session(user_id)
        _age(memory_store, session.id, last_used_at=timedelta(minutes=31))

        assert not await sessions.is_session_valid(user_id, session.id)
        stored = memory_store.get_session(session.id)
        assert stored.revoked and not stored.is_active
        assert stored.revoked_at is not None
        assert stored.revoked_by is None
        # later checks see the same result
        assert not await sessions.is_session_valid(user_id, session.id)
        assert not await sessions.is_session_valid(user_id, session.id)

    async def test_past_absolute_expiry_is_revoked(self, sessions, memory_store, user_id):
        session = await sessions.create_session(user_id)
        stored = memory_store.sessions[session.id]
        memory_store.sessions[session.id] = replace(
            stored, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1)
        )

        assert not await sessions.is_session_valid(user_id, session.id)
        assert memory_store.get_session(session.id).revoked

    async def test_inactivity_window_follows_system_setting(self, sessions, memory_store, user_id):
        session = await sessions.create_session(user_id)
        _age(memory_store, session.id, last_used_at=timedelta(minutes=45))
        memory_store.set_system_setting("global_session_timeout_minutes", 60)

        assert await sessions.is_session_valid(user_id, session.id)

    async def test_activity_update_extends_window(self, sessions, memory_store, user_id):
        session = await sessions.create_session(user_id)
        _age(memory_store, session.id, last_used_at=timedelta(minutes=29))

        assert await sessions.update_session_activity(session.id)

        remaining = await sessions.get_session_remaining_time(session.id)
        assert 29 * 60 < remaining <= 30 * 60

    async def test_remaining_time_is_floored_at_zero(self, sessions, memory_store, user_id):
        session = await sessions.create_session(user_id)
        _age(memory_store, session.id, last_used_at=timedelta(hours=2))

        assert await sessions.get_session_remaining_time(session.id) == 0
        assert await sessions.get_session_remaining_time(new_id()) == 0


class TestSessionRevocation:
    async def test_revoke_is_idempotent(self, sessions, memory_store, user_id):
        session = await sessions.create_session(user_id)

        assert await sessions.revoke_session(session.id, revoked_by=user_id) is True
        assert await sessions.revoke_session(session.id, revoked_by=user_id) is False
        stored = memory_store.get_session(session.id)
        assert stored.revoked_by == user_id

    async def test_revoke_all_with_exception(self, sessions, user_id):
        keep = await sessions.create_session(user_id)
        drop_one = await sessions.create_session(user_id)
        drop_two = await sessions.create_session(user_id)

        revoked = await sessions.revoke_all_user_sessions(user_id, except_session_id=keep.id)

        assert set(revoked) == {drop_one.id, drop_two.id}
        assert await sessions.is_session_valid(user_id, keep.id)
        assert not await sessions.is_session_valid(user_id, drop_one.id)

    async def test_active_sessions_most_recent_first(self, sessions, memory_store, user_id):
        older = await sessions.create_session(user_id)
        newer = await sessions.create_session(user_id)
        revoked = await sessions.create_session(user_id)
        _age(memory_store, older.id, last_used_at=timedelta(minutes=10))
        await sessions.revoke_session(revoked.id)

        active = await sessions.get_active_sessions(user_id)

        assert [s.id for s in active] == [newer.id, older.id]


class TestRevocationCache:
    async def test_cache_marker_short_circuits(self, memory_store, settings, user_id):
        cache = FakeRevocationCache()
        sessions = SessionLifecycleManager(memory_store, cache, settings)
        session = await sessions.create_session(user_id)
        cache.revoked.add(session.id)

        assert not await sessions.is_session_valid(user_id, session.id)

    async def test_revocation_sets_marker(self, memory_store, settings, user_id):
        cache = FakeRevocationCache()
        sessions = SessionLifecycleManager(memory_store, cache, settings)
        session = await sessions.create_session(user_id)

        await sessions.revoke_session(session.id)

        assert session.id in cache.revoked

    async def test_cache_failure_falls_back_to_store(self, memory_store, settings, user_id):
        sessions = SessionLifecycleManager(memory_store, FakeRevocationCache(fail=True), settings)
        session = await sessions.create_session(user_id)

        assert await sessions.is_session_valid(user_id, session.id)
        assert await sessions.revoke_session(session.id)
        assert not await sessions.is_session_valid(user_id, session.id)

    async def test_cached_activity_keeps_session_alive(self, memory_store, settings, user_id):
        cache = FakeRevocationCache()
        sessions = SessionLifecycleManager(memory_store, cache, settings)
        session = await sessions.create_session(user_id)
        _age(memory_store, session.id, last_used_at=timedelta(minutes=45))
        cache.activity[session.id] = datetime.now(timezone.utc) - timedelta(minutes=5)

        assert await sessions.is_session_valid(user_id, session.id)
        remaining = await sessions.get_session_remaining_time(session.id)
        assert 24 * 60 < remaining <= 25 * 60

    async def test_stale_cached_activity_is_ignored(self, memory_store, settings, user_id):
        cache = FakeRevocationCache()
        sessions = SessionLifecycleManager(memory_store, cache, settings)
        session = await sessions.create_session(user_id)
        _age(memory_store, session.id, last_used_at=timedelta(minutes=45))
        cache.activity[session.id] = datetime.now(timezone.utc) - timedelta(hours=2)

        assert not await sessions.is_session_valid(user_id, session.id)

    async def test_activity_update_writes_cache(self, memory_store, settings, user_id):
        cache = FakeRevocationCache()
        sessions = SessionLifecycleManager(memory_store, cache, settings)
        session = await sessions.create_session(user_id)

        await sessions.update_session_activity(session.id)

        assert session.id in cache.activity
