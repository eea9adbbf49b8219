"""Tests for cookie-backed session handling."""

from urllib.parse import unquote

import pytest
from cryptography.fernet import Fernet
from starlette.responses import Response

from bffauth.service.errors import SessionStorageError
from bffauth.session.manager import DELETE, SessionManager, merge_session_data
from bffauth.session.signing import sign, unsign
from bffauth.storage.cookie_store import CookieSessionStore
from bffauth.storage.memory import MemorySessionStore
from bffauth.storage.redis_store import RedisSessionStore
from conftest import FakeRedis, make_request, session_cookie


def set_cookie_header(response):
    headers = [v for k, v in response.raw_headers if k == b"set-cookie"]
    assert len(headers) == 1
    return headers[0].decode()


def cookie_from_response(manager, response):
    header = set_cookie_header(response)
    pair = header.split(";", 1)[0]
    name, value = pair.split("=", 1)
    assert name == manager.cookie_name
    return pair, unquote(value)


class TestMerge:
    def test_merge_keeps_unlisted_keys_and_deletes_marked(self):
        current = {"auth": {"is_authenticated": False}, "state": "s", "keep": 1}
        merged = merge_session_data(current, {"state": DELETE, "user": {"id": 1}})
        assert merged == {"auth": {"is_authenticated": False}, "keep": 1, "user": {"id": 1}}
        assert current["state"] == "s"


class TestSessionLifecycle:
    async def test_new_session_gets_default_payload_and_cookie(self, sessions, store):
        request = make_request()
        state = await sessions.init(request)
        assert state.data == {"auth": {"is_authenticated": False}}
        assert await store.get(state.id) == state.data

        response = Response()
        sessions.commit(request, response)
        header = set_cookie_header(response)
        assert "HttpOnly" in header
        assert "Max-Age=86400" in header
        assert "Path=/" in header
        assert "samesite=lax" in header.lower()
        _, signed = cookie_from_response(sessions, response)
        assert unsign(signed, sessions.secrets).value == state.id

    async def test_init_is_idempotent_per_request(self, sessions, store):
        request = make_request()
        first = await sessions.init(request)
        second = await sessions.init(request)
        assert first is second
        assert len(store) == 1

    async def test_existing_session_is_loaded(self, sessions, store):
        await store.set("known-id", {"auth": {"is_authenticated": False}, "x": 1})
        request = make_request(session_cookie(sessions, "known-id", {}))
        state = await sessions.init(request)
        assert state.id == "known-id"
        assert state.data["x"] == 1

    async def test_invalid_signature_starts_fresh_session(self, sessions, store):
        await store.set("known-id", {"x": 1})
        forged = sign("known-id", "attacker-secret")
        request = make_request(f"{sessions.cookie_name}={forged}")
        state = await sessions.init(request)
        assert state.id != "known-id"
        assert state.data == {"auth": {"is_authenticated": False}}

    async def test_unknown_id_gets_fresh_id(self, sessions):
        request = make_request(session_cookie(sessions, "expired-id", {}))
        state = await sessions.init(request)
        assert state.id != "expired-id"

    async def test_update_merges_and_persists(self, sessions, store):
        request = make_request()
        await sessions.init(request)
        await sessions.update(request, lambda data: {"state": "abc"})
        state = await sessions.update(request, lambda data: {"other": data["state"] + "!"})
        assert state.data == {"auth": {"is_authenticated": False}, "state": "abc", "other": "abc!"}
        assert await store.get(state.id) == state.data

    async def test_update_with_delete(self, sessions):
        request = make_request()
        await sessions.update(request, lambda _: {"state": "abc"})
        state = await sessions.update(request, lambda _: {"state": DELETE})
        assert "state" not in state.data

    async def test_snapshots_are_not_mutated_by_updates(self, sessions):
        request = make_request()
        before = await sessions.init(request)
        await sessions.update(request, lambda _: {"state": "abc"})
        assert "state" not in before.data

    async def test_replace(self, sessions, store):
        request = make_request()
        await sessions.update(request, lambda _: {"state": "abc"})
        state = await sessions.replace(request, {"auth": {"is_authenticated": False}})
        assert await store.get(state.id) == {"auth": {"is_authenticated": False}}

    async def test_regenerate_moves_data_to_new_id(self, sessions, store):
        request = make_request()
        old = await sessions.update(request, lambda _: {"marker": 1})
        new = await sessions.regenerate(request)
        assert new.id != old.id
        assert new.data == old.data
        assert await store.get(old.id) is None
        assert await store.get(new.id) == old.data

    async def test_destroy_expires_cookie(self, sessions, store):
        request = make_request()
        state = await sessions.init(request)
        await sessions.destroy(request)
        assert await store.get(state.id) is None
        assert await sessions.read(request) is None

        response = Response()
        sessions.commit(request, response)
        header = set_cookie_header(response)
        assert header.startswith(f'{sessions.cookie_name}=""') or "Max-Age=0" in header

    async def test_cookie_round_trip_across_requests(self, sessions):
        first = make_request()
        state = await sessions.update(first, lambda _: {"state": "abc"})
        response = Response()
        sessions.commit(first, response)
        pair, _ = cookie_from_response(sessions, response)

        second = make_request(pair)
        loaded = await sessions.init(second)
        assert loaded.id == state.id
        assert loaded.data["state"] == "abc"

    async def test_rotated_secret_still_reads_old_cookies(self, store):
        old = SessionManager(store, ["old-secret"])
        request = make_request()
        state = await old.init(request)
        response = Response()
        old.commit(request, response)
        pair, _ = cookie_from_response(old, response)

        rotated = SessionManager(store, ["new-secret", "old-secret"])
        loaded = await rotated.init(make_request(pair))
        assert loaded.id == state.id

    async def test_secure_flag(self, store):
        manager = SessionManager(store, ["secret"], secure=True)
        request = make_request()
        await manager.init(request)
        response = Response()
        manager.commit(request, response)
        assert "Secure" in set_cookie_header(response)


class TestCookieStoreSessions:
    async def test_session_travels_in_cookie(self):
        manager = SessionManager(CookieSessionStore(Fernet.generate_key()), ["secret"])
        first = make_request()
        state = await manager.update(first, lambda _: {"auth": {"is_authenticated": False}, "x": 1})
        response = Response()
        manager.commit(first, response)
        pair, _ = cookie_from_response(manager, response)

        loaded = await manager.init(make_request(pair))
        assert loaded.id == state.id
        assert loaded.data["x"] == 1


class TestStorageErrors:
    async def test_store_failures_become_session_storage_error(self, settings):
        redis = FakeRedis()
        redis.fail = True
        manager = SessionManager(RedisSessionStore(client=redis), settings.session_secrets)
        with pytest.raises(SessionStorageError) as exc_info:
            await manager.init(make_request())
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "session handling failed"
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    async def test_out_of_request_access(self, store, settings):
        manager = SessionManager(store, settings.session_secrets)
        await manager.save_by_id("sid", {"n": 1})
        assert await manager.load_by_id("sid") == {"n": 1}
        assert await manager.list_sessions() == [("sid", {"n": 1})]

    def test_requires_a_secret(self):
        with pytest.raises(ValueError):
            SessionManager(MemorySessionStore(), [])
