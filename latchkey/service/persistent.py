"""Remember-me tokens.

A token is a random key stored with the user id as its value and carried in
a long-lived cookie. It authenticates at most once: ``consume`` removes it
with an atomic take, then issues a replacement and starts a fresh session.
A replayed token finds nothing and degrades to "not authenticated".
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

from latchkey.config import ConfigContext
from latchkey.logging import get_logger
from latchkey.request import RequestState
from latchkey.service.outcome import TokenOutcome
from latchkey.service.session import SessionManager, user_id_of
from latchkey.storage.base import NOT_FOUND, StoreNamespace

logger = get_logger(__name__)

PERSISTENT_NAMESPACE = "persistent_session"


class PersistentTokenManager:
    def __init__(self, config: ConfigContext, sessions: SessionManager) -> None:
        self.config = config
        self.sessions = sessions

    def _store(self) -> StoreNamespace:
        return StoreNamespace(self.config.store, PERSISTENT_NAMESPACE)

    def _generate_token(self) -> str:
        return self.config.prefixed(str(uuid.uuid4()))

    @property
    def cookie_key(self) -> str:
        return self.config.persistent_cookie_key

    async def issue(self, user: Any) -> str:
        """Store a new token for ``user`` and return it for transport."""
        store = self._store()
        token = self._generate_token()
        user_id = user_id_of(user)
        await store.put(token, user_id, self.config.persistent_cookie_max_age)
        logger.info("persistent_token_issued", user_id=user_id, token=token)
        return token

    async def revoke(self, token: str) -> None:
        await self._store().delete(token)
        logger.info("persistent_token_revoked", token=token)

    async def create(self, state: RequestState, user: Any) -> RequestState:
        """Issue a token and set it as the remember-me cookie.

        A token already carried by this flow is revoked, since its cookie is
        about to be overwritten.
        """
        previous = state.cookie(self.cookie_key)
        if previous:
            await self.revoke(previous)
        token = await self.issue(user)
        return state.put_resp_cookie(
            self.cookie_key, token, max_age=self.config.persistent_cookie_max_age
        )

    async def delete(self, state: RequestState) -> RequestState:
        """Revoke the presented token, if any, and expire its cookie."""
        token = state.cookie(self.cookie_key)
        if not token:
            return state
        await self.revoke(token)
        return state.expire_cookie(self.cookie_key)

    async def consume(self, state: RequestState, token: str) -> TokenOutcome:
        """Exchange ``token`` for a new session and a replacement token."""
        store = self._store()
        users = self.config.users
        user_id = await store.take(token)
        if user_id is NOT_FOUND:
            logger.info("persistent_token_not_found", token=token)
            return TokenOutcome.failure(state, "not_found")
        user = users.get_by(id=user_id)
        if user is None:
            logger.info("persistent_token_user_missing", user_id=user_id)
            return TokenOutcome.failure(state, "user_not_found")
        new_token = await self.issue(user)
        state.put_resp_cookie(
            self.cookie_key, new_token, max_age=self.config.persistent_cookie_max_age
        )
        await self.sessions.rotate(state, user)
        logger.info("persistent_token_consumed", user_id=user_id_of(user))
        return TokenOutcome.success(state, user, token=new_token)

    async def authenticate(self, state: RequestState) -> RequestState:
        """Sign in from the remember-me cookie when no user is assigned.

        A stale cookie is cleared. The cookie max-age is renewed on every
        request that did not already write it.
        """
        if state.current_user(self.config) is None:
            token = state.req_cookies.get(self.cookie_key)
            if token:
                outcome = await self.consume(state, token)
                if not outcome.ok:
                    await self.delete(state)
        self._maybe_renew(state)
        return state

    def _maybe_renew(self, state: RequestState) -> None:
        if self.cookie_key in state.resp_cookies:
            return
        value: Optional[str] = state.req_cookies.get(self.cookie_key)
        if value:
            state.put_resp_cookie(
                self.cookie_key, value, max_age=self.config.persistent_cookie_max_age
            )


__all__ = ["PersistentTokenManager", "PERSISTENT_NAMESPACE"]
