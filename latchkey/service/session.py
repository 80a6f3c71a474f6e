from __future__ import annotations

import secrets
from collections.abc import Mapping
from typing import Any, Optional

from latchkey.config import ConfigContext
from latchkey.logging import get_logger
from latchkey.request import RequestState
from latchkey.service.extensions import ExtensionRegistry, Halt, HookContext, Stage
from latchkey.storage.base import NOT_FOUND, StoreNamespace
from latchkey.storage.models import SessionRecord

logger = get_logger(__name__)

SESSION_NAMESPACE = "credentials"


def user_id_of(user: Any) -> str:
    """Identifier of a user record; the only field the core ever reads."""
    if isinstance(user, Mapping):
        user_id = user.get("id")
    else:
        user_id = getattr(user, "id", None)
    if user_id is None:
        raise ValueError("user record has no 'id'")
    return str(user_id)


class AuthPlug:
    """Base for anything that binds a user to a request.

    Subclasses implement ``fetch``, ``create`` and ``delete``; the ``do_*``
    wrappers keep the current-user assign in sync and run the
    ``before_create``/``before_delete`` extension stages. Replacing the
    session mechanism means supplying another subclass, not patching this one.
    """

    def __init__(
        self, config: ConfigContext, registry: Optional[ExtensionRegistry] = None
    ) -> None:
        self.config = config
        self.registry = registry or ExtensionRegistry()

    async def fetch(self, state: RequestState) -> Optional[Any]:
        raise NotImplementedError

    async def create(self, state: RequestState, user: Any) -> RequestState:
        raise NotImplementedError

    async def delete(self, state: RequestState) -> RequestState:
        raise NotImplementedError

    async def call(self, state: RequestState) -> RequestState:
        """Attach config to the request and assign the current user if unset."""
        state.put_config(self.config)
        if state.current_user(self.config) is None:
            await self.do_fetch(state)
        return state

    async def do_fetch(self, state: RequestState) -> RequestState:
        user = await self.fetch(state)
        return state.assign_current_user(user, self.config)

    async def do_create(self, state: RequestState, user: Any) -> RequestState:
        context = HookContext(stage=Stage.BEFORE_CREATE.value, config=self.config, user=user)
        result = await self.registry.dispatch(Stage.BEFORE_CREATE, state, context)
        if isinstance(result, Halt):
            return state
        await self.create(state, user)
        return state.assign_current_user(user, self.config)

    async def do_delete(self, state: RequestState) -> RequestState:
        user = state.current_user(self.config)
        context = HookContext(stage=Stage.BEFORE_DELETE.value, config=self.config, user=user)
        result = await self.registry.dispatch(Stage.BEFORE_DELETE, state, context)
        if isinstance(result, Halt):
            return state
        await self.delete(state)
        return state.assign_current_user(None, self.config)

    async def rotate(self, state: RequestState, user: Any) -> RequestState:
        """Replace the current session with a fresh one bound to ``user``.

        Used when privileges change. Runs no extension stages.
        """
        await self.delete(state)
        await self.create(state, user)
        return state.assign_current_user(user, self.config)


class SessionManager(AuthPlug):
    """Store-backed sessions keyed by a random id carried in a cookie.

    A new id is generated on every ``create``; an id presented before
    authentication is never reused afterwards. The store write always
    completes before the cookie is written, so a failed write never hands
    the client an id the server does not know.
    """

    def _store(self) -> StoreNamespace:
        return StoreNamespace(self.config.store, SESSION_NAMESPACE)

    def session_id(self, state: RequestState) -> Optional[str]:
        return state.cookie(self.config.session_cookie_key) or None

    @staticmethod
    def _generate_id() -> str:
        return secrets.token_urlsafe(32)

    async def fetch(self, state: RequestState) -> Optional[Any]:
        store = self._store()
        users = self.config.users
        session_id = self.session_id(state)
        if not session_id:
            return None
        value = await store.get(session_id)
        if value is NOT_FOUND:
            return None
        record = SessionRecord.from_value(value)
        if record is None:
            logger.warning("session_record_unreadable", session_id=session_id)
            return None
        user = users.get_by(id=record.user_id)
        if user is None:
            logger.info("session_user_missing", user_id=record.user_id)
        return user

    async def create(self, state: RequestState, user: Any) -> RequestState:
        store = self._store()
        previous_id = self.session_id(state)
        if previous_id:
            await store.delete(previous_id)
        session_id = self._generate_id()
        while session_id == previous_id:
            session_id = self._generate_id()
        record = SessionRecord(user_id=user_id_of(user))
        ttl = self.config.session_ttl
        await store.put(session_id, record.to_dict(), ttl)
        state.put_resp_cookie(self.config.session_cookie_key, session_id, max_age=ttl)
        logger.info("session_created", user_id=record.user_id, session_id=session_id, ttl=ttl)
        return state

    async def delete(self, state: RequestState) -> RequestState:
        store = self._store()
        session_id = self.session_id(state)
        if not session_id:
            return state
        await store.delete(session_id)
        state.expire_cookie(self.config.session_cookie_key)
        logger.info("session_deleted", session_id=session_id)
        return state


__all__ = ["AuthPlug", "SessionManager", "SESSION_NAMESPACE", "user_id_of"]
