"""Tests for SessionManager: create/fetch/delete, fixation defense, failure modes."""

import pytest

from latchkey.config import ConfigContext
from latchkey.errors import ConfigurationError
from latchkey.request import RequestState
from latchkey.service.session import SESSION_NAMESPACE, SessionManager, user_id_of
from latchkey.storage.base import NOT_FOUND
from latchkey.storage.errors import StoreError


@pytest.fixture
def sessions(config):
    return SessionManager(config)


def follow_up(state: RequestState, key: str = "auth") -> RequestState:
    """Next request from a client that kept the cookie issued by ``state``."""
    return RequestState(req_cookies={key: state.resp_cookies[key].value})


class TestRoundtrip:
    async def test_create_then_fetch_returns_user(self, sessions, alice):
        state = await sessions.create(RequestState(), alice)
        assert await sessions.fetch(follow_up(state)) == alice

    async def test_fetch_within_same_flow_sees_new_cookie(self, sessions, alice):
        state = await sessions.create(RequestState(), alice)
        assert await sessions.fetch(state) == alice

    async def test_call_assigns_current_user(self, sessions, alice, config):
        created = await sessions.create(RequestState(), alice)
        state = await sessions.call(follow_up(created))
        assert state.current_user(config) == alice
        assert state.config is config

    async def test_no_cookie_means_no_user(self, sessions):
        assert await sessions.fetch(RequestState()) is None

    async def test_unknown_session_id_means_no_user(self, sessions):
        assert await sessions.fetch(RequestState(req_cookies={"auth": "forged"})) is None

    async def test_store_holds_user_reference_with_ttl(self, sessions, alice, store):
        state = await sessions.create(RequestState(), alice)
        session_id = state.resp_cookies["auth"].value

        value = await store.get(f"{SESSION_NAMESPACE}:{session_id}")
        assert value["user_id"] == "42"
        assert state.resp_cookies["auth"].max_age == 1800

    async def test_session_expires_with_ttl(self, sessions, alice, clock):
        state = await sessions.create(RequestState(), alice)
        clock.advance(1800)
        assert await sessions.fetch(follow_up(state)) is None

    async def test_zero_ttl_keeps_session_until_logout(self, store, users, alice, clock):
        sessions = SessionManager(ConfigContext(cache_store_backend=store, users=users, session_ttl=0))
        state = await sessions.create(RequestState(), alice)
        clock.advance(10 ** 7)

        assert state.resp_cookies["auth"].max_age is None
        assert await sessions.fetch(follow_up(state)) == alice

    async def test_deleted_user_no_longer_resolves(self, sessions, alice, users):
        state = await sessions.create(RequestState(), alice)
        users.delete(alice)
        assert await sessions.fetch(follow_up(state)) is None


class TestDelete:
    async def test_delete_clears_store_and_cookie(self, sessions, alice, store):
        created = await sessions.create(RequestState(), alice)
        session_id = created.resp_cookies["auth"].value
        state = follow_up(created)

        await sessions.delete(state)

        assert state.resp_cookies["auth"].expired
        assert await sessions.fetch(state) is None
        assert await store.get(f"{SESSION_NAMESPACE}:{session_id}") is NOT_FOUND

    async def test_do_delete_unassigns_user(self, sessions, alice, config):
        state = await sessions.call(follow_up(await sessions.create(RequestState(), alice)))
        await sessions.do_delete(state)
        assert state.current_user(config) is None

    async def test_delete_without_session_is_noop(self, sessions):
        state = await sessions.delete(RequestState())
        assert state.resp_cookies == {}


class TestFixation:
    async def test_create_never_reuses_presented_id(self, sessions, alice, store):
        state = RequestState(req_cookies={"auth": "attacker-chosen"})
        await store.put(f"{SESSION_NAMESPACE}:attacker-chosen", {"user_id": "42"})

        await sessions.create(state, alice)

        new_id = state.resp_cookies["auth"].value
        assert new_id != "attacker-chosen"
        assert await store.get(f"{SESSION_NAMESPACE}:attacker-chosen") is NOT_FOUND

    async def test_regenerates_on_id_collision(self, sessions, alice, monkeypatch):
        ids = iter(["same", "same", "fresh"])
        monkeypatch.setattr(SessionManager, "_generate_id", staticmethod(lambda: next(ids)))
        state = RequestState(req_cookies={"auth": "same"})

        await sessions.create(state, alice)

        assert state.resp_cookies["auth"].value == "fresh"

    async def test_rotate_replaces_session(self, sessions, alice, config, store):
        created = await sessions.create(RequestState(), alice)
        old_id = created.resp_cookies["auth"].value
        state = follow_up(created)

        await sessions.rotate(state, alice)

        assert state.resp_cookies["auth"].value != old_id
        assert state.current_user(config) == alice
        assert await store.get(f"{SESSION_NAMESPACE}:{old_id}") is NOT_FOUND


class FailingStore:
    async def get(self, key):
        raise StoreError("down")

    async def put(self, key, value, ttl=None):
        raise StoreError("down")

    async def delete(self, key):
        return None

    async def take(self, key):
        raise StoreError("down")


class TestFailures:
    async def test_missing_store_is_configuration_error(self, users, alice):
        sessions = SessionManager(ConfigContext(users=users))
        with pytest.raises(ConfigurationError):
            await sessions.fetch(RequestState(req_cookies={"auth": "x"}))

    async def test_missing_users_is_configuration_error(self, store):
        sessions = SessionManager(ConfigContext(cache_store_backend=store))
        with pytest.raises(ConfigurationError):
            await sessions.fetch(RequestState())

    async def test_failed_store_write_sets_no_cookie(self, users, alice):
        sessions = SessionManager(ConfigContext(cache_store_backend=FailingStore(), users=users))
        state = RequestState()
        with pytest.raises(StoreError):
            await sessions.create(state, alice)
        assert "auth" not in state.resp_cookies

    async def test_namespaced_cookie_key(self, store, users, alice):
        sessions = SessionManager(ConfigContext(cache_store_backend=store, users=users, namespace="app"))
        state = await sessions.create(RequestState(), alice)
        assert "app_auth" in state.resp_cookies


def test_user_id_of_accepts_mappings_and_objects(alice):
    assert user_id_of({"id": 7}) == "7"
    assert user_id_of(alice) == "42"
    with pytest.raises(ValueError):
        user_id_of({"email": "nobody@example.com"})
