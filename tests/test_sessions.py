"""
Unit tests for the Session Store (planning_mcp/sessions.py) and the JSON
file backend it persists through (planning_mcp/storage.py).
"""

import asyncio
import json
from datetime import timedelta

import pytest

from planning_mcp.models import SessionPatch, TokenSet
from planning_mcp.sessions import SessionStore
from planning_mcp.storage import JsonFileBackend
from tests.fakes import BlockingBackend


class TestCreate:
    async def test_create_computes_expiry(self, sessions, clock):
        session = await sessions.create("user-1", TokenSet("at", "rt", 3600))

        assert session.user_id == "user-1"
        assert session.access_token == "at"
        assert session.refresh_token == "rt"
        assert session.created_at == clock.now
        assert session.expires_at == clock.now + timedelta(seconds=3600)

    async def test_create_without_lifetime_never_expires(self, sessions, clock):
        session = await sessions.create("user-1", TokenSet("at"))

        assert session.expires_at is None
        assert session.refresh_token is None
        clock.advance(10 * 365 * 24 * 3600)
        assert not session.is_expired(clock.now)

    async def test_zero_lifetime_is_expired_immediately(self, sessions, clock):
        session = await sessions.create("user-1", TokenSet("at", None, 0))

        assert session.is_expired(clock.now)

    async def test_ids_are_random_and_unique(self, sessions):
        created = [await sessions.create("user-1", TokenSet("at")) for _ in range(50)]
        ids = {s.id for s in created}

        assert len(ids) == 50
        # 32 random bytes, urlsafe base64 encoded
        assert all(len(session_id) >= 43 for session_id in ids)

    async def test_get_returns_created_session(self, sessions):
        session = await sessions.create("user-1", TokenSet("at"))

        assert await sessions.get(session.id) == session
        assert await sessions.get("unknown") is None


class TestUpdate:
    async def test_update_replaces_tokens_and_keeps_identity(self, sessions, clock):
        session = await sessions.create("user-1", TokenSet("at-1", "rt-1", 60))
        clock.advance(120)
        new_expiry = clock.now + timedelta(seconds=3600)

        updated = await sessions.update(session.id, SessionPatch("at-2", "rt-2", new_expiry))

        assert updated.id == session.id
        assert updated.user_id == session.user_id
        assert updated.created_at == session.created_at
        assert updated.access_token == "at-2"
        assert updated.refresh_token == "rt-2"
        assert updated.expires_at == new_expiry
        assert updated.updated_at == clock.now
        assert await sessions.get(session.id) == updated

    async def test_update_without_rotation_keeps_refresh_token(self, sessions):
        session = await sessions.create("user-1", TokenSet("at-1", "rt-1", 60))

        updated = await sessions.update(session.id, SessionPatch("at-2"))

        assert updated.refresh_token == "rt-1"
        assert updated.expires_at is None

    async def test_update_unknown_session_returns_none(self, sessions):
        assert await sessions.update("unknown", SessionPatch("at")) is None

    async def test_concurrent_updates_never_mix_token_pairs(self, sessions):
        session = await sessions.create("user-1", TokenSet("at-0", "rt-0", 60))

        await asyncio.gather(
            *(sessions.update(session.id, SessionPatch(f"at-{n}", f"rt-{n}")) for n in range(1, 11))
        )

        final = await sessions.get(session.id)
        assert final.access_token.removeprefix("at-") == final.refresh_token.removeprefix("rt-")


class TestDelete:
    async def test_delete_is_idempotent(self, sessions):
        session = await sessions.create("user-1", TokenSet("at"))

        await sessions.delete(session.id)
        await sessions.delete(session.id)
        await sessions.delete("never-existed")

        assert await sessions.get(session.id) is None

    async def test_list_for_user(self, sessions):
        a = await sessions.create("user-1", TokenSet("at"))
        b = await sessions.create("user-1", TokenSet("at"))
        await sessions.create("user-2", TokenSet("at"))

        assert {s.id for s in await sessions.list_for_user("user-1")} == {a.id, b.id}

    async def test_cancelled_delete_still_removes_the_session(self):
        backend = BlockingBackend()
        store = SessionStore(backend)
        session = await store.create("user-1", TokenSet("at"))
        backend.block = "delete"

        task = asyncio.create_task(store.delete(session.id))
        await asyncio.to_thread(backend.entered.wait, 5)
        task.cancel()
        await asyncio.sleep(0.01)
        backend.release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.id not in backend.load("sessions")
        assert await store.get(session.id) is None


class TestSweep:
    async def test_sweep_removes_only_unrefreshable_expired_sessions(self, sessions, clock):
        dead = await sessions.create("user-1", TokenSet("at", None, 60))
        refreshable = await sessions.create("user-1", TokenSet("at", "rt", 60))
        fresh = await sessions.create("user-1", TokenSet("at", None, 7200))
        eternal = await sessions.create("user-1", TokenSet("at"))
        clock.advance(120)

        removed = await sessions.delete_expired()

        assert removed == 1
        assert await sessions.get(dead.id) is None
        for kept in (refreshable, fresh, eternal):
            assert await sessions.get(kept.id) is not None

    async def test_sweep_honours_max_age(self, backend, clock):
        store = SessionStore(backend, clock=clock, max_age_seconds=300)
        old = await store.create("user-1", TokenSet("at"))
        clock.advance(301)
        young = await store.create("user-1", TokenSet("at"))

        assert await store.delete_expired() == 1
        assert await store.get(old.id) is None
        assert await store.get(young.id) is not None


class TestJsonFileBackend:
    async def test_sessions_survive_restart(self, tmp_path, clock):
        store = SessionStore(JsonFileBackend(tmp_path), clock=clock)
        session = await store.create("user-1", TokenSet("at", "rt", 3600))

        reopened = SessionStore(JsonFileBackend(tmp_path), clock=clock)

        assert await reopened.get(session.id) == session

    async def test_write_is_on_disk_when_call_returns(self, tmp_path):
        store = SessionStore(JsonFileBackend(tmp_path))
        session = await store.create("user-1", TokenSet("at", None, None))

        on_disk = json.loads((tmp_path / "sessions.json").read_text())
        assert on_disk[session.id]["user_id"] == "user-1"
        assert on_disk[session.id]["refresh_token"] is None
        assert on_disk[session.id]["expires_at"] is None

        await store.delete(session.id)

        assert json.loads((tmp_path / "sessions.json").read_text()) == {}

    async def test_no_temp_files_left_behind(self, tmp_path):
        store = SessionStore(JsonFileBackend(tmp_path))
        for _ in range(3):
            await store.create("user-1", TokenSet("at"))

        assert sorted(p.name for p in tmp_path.iterdir()) == ["sessions.json"]
