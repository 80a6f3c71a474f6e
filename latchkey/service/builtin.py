from __future__ import annotations

import inspect
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from latchkey.errors import ConfigurationError
from latchkey.logging import get_logger
from latchkey.request import RequestState
from latchkey.service.controller import Controller
from latchkey.service.extensions import Extension, ExtensionRegistry, Halt, HookContext, Stage, hook
from latchkey.service.outcome import Outcome
from latchkey.service.persistent import PersistentTokenManager
from latchkey.service.session import SessionManager, user_id_of
from latchkey.storage.base import NOT_FOUND, StoreNamespace

logger = get_logger(__name__)

_TRUTHY = {"true", "1", "yes", "on"}


class PersistentSessionExtension(Extension):
    """Issues a remember-me cookie on sign in and revokes it on sign out."""

    name = "persistent_session"

    def __init__(self, tokens: PersistentTokenManager) -> None:
        super().__init__()
        self.tokens = tokens

    @hook(Stage.BEFORE_PROCESS, controller="session", action="create")
    def remember_choice(self, state: RequestState, context: HookContext) -> RequestState:
        user_params = state.params.get("user") or state.params
        choice = user_params.get("persistent_session", "true")
        state.private["store_persistent_session"] = str(choice).lower() in _TRUTHY
        return state

    @hook(Stage.BEFORE_RESPOND, controller="session", action="create")
    async def issue_cookie(self, outcome: Outcome, context: HookContext) -> Outcome:
        if outcome.ok and outcome.state.private.get("store_persistent_session"):
            await self.tokens.create(outcome.state, outcome.value)
        return outcome

    @hook(Stage.BEFORE_DELETE)
    async def revoke_cookie(self, state: RequestState, context: HookContext) -> RequestState:
        return await self.tokens.delete(state)


def _email_confirmation_required(state: RequestState) -> str:
    return (
        "You'll need to confirm your e-mail before you can sign in. "
        "An e-mail confirmation link has been sent to you."
    )


def _email_has_been_confirmed(state: RequestState) -> str:
    return "The email address has been confirmed."


def _email_confirmation_failed(state: RequestState) -> str:
    return "The email address couldn't be confirmed."


class EmailConfirmationExtension(Extension):
    """Refuses sessions to users whose e-mail is still unconfirmed.

    Delivering the confirmation e-mail is left to the application.
    """

    name = "email_confirmation"
    messages = {
        "email_confirmation_required": _email_confirmation_required,
        "email_has_been_confirmed": _email_has_been_confirmed,
        "email_confirmation_failed": _email_confirmation_failed,
    }

    def __init__(self, sessions: SessionManager) -> None:
        super().__init__()
        self.sessions = sessions

    @staticmethod
    def is_confirmed(user: Any) -> bool:
        if getattr(user, "email_confirmed_at", None) is not None:
            return True
        return getattr(user, "email_confirmation_token", None) is None

    @hook(Stage.BEFORE_RESPOND, controller="session", action="create")
    async def require_confirmed(self, outcome: Outcome, context: HookContext) -> Any:
        if not outcome.ok or self.is_confirmed(outcome.value):
            return outcome
        state = outcome.state
        await self.sessions.do_delete(state)
        message = context.registry.message("email_confirmation_required", state, context.config)
        state.put_flash("error", message)
        logger.info("email_confirmation_required", user_id=user_id_of(outcome.value))
        return Halt(Outcome.failure(state, "email_not_confirmed", outcome.value))

    def confirm_email(self, token: str) -> Outcome:
        users = self.sessions.config.users
        user = users.get_by(email_confirmation_token=token) if token else None
        if user is None:
            return Outcome.failure(None, "invalid_token")
        confirmed = users.update(
            user,
            email_confirmed_at=datetime.now(timezone.utc),
            email_confirmation_token=None,
        )
        logger.info("email_confirmed", user_id=user_id_of(confirmed))
        return Outcome.success(None, confirmed)


class ConfirmationController(Controller):
    name = "confirmation"

    def __init__(self, extension: EmailConfirmationExtension, registry: ExtensionRegistry) -> None:
        super().__init__(extension.sessions, registry)
        self.extension = extension
        self.actions = {"show": (self.process_show, self.respond_show)}

    async def process_show(self, state: RequestState, params: Mapping[str, Any]) -> Outcome:
        result = self.extension.confirm_email(str(params.get("id") or ""))
        result.state = state
        return result

    async def respond_show(self, outcome: Outcome) -> Outcome:
        state = outcome.state
        if outcome.ok:
            state.put_flash("info", self.message("email_has_been_confirmed", state))
        else:
            state.put_flash("error", self.message("email_confirmation_failed", state))
        return outcome


RESET_PASSWORD_NAMESPACE = "reset_password"

Deliver = Callable[[Any, str], Any]


class ResetPasswordExtension(Extension):
    """Single-use password reset tokens kept in the store.

    A token maps to a user id and expires after ``reset_password_token_ttl``
    seconds. Sending the reset link is left to the application, which
    receives ``(user, token)`` through ``deliver``.
    """

    name = "reset_password"
    messages = {
        "email_has_been_sent": lambda state: (
            "If an account for the provided email exists, an email with reset "
            "instructions will be sent to you. Please check your inbox."
        ),
        "invalid_token": lambda state: "The reset token has expired.",
        "password_has_been_reset": lambda state: "The password has been updated.",
        "password_reset_failed": lambda state: "The password couldn't be updated.",
    }

    def __init__(self, sessions: SessionManager, deliver: Optional[Deliver] = None) -> None:
        super().__init__()
        self.sessions = sessions
        self.deliver = deliver

    def _store(self) -> StoreNamespace:
        return StoreNamespace(self.sessions.config.store, RESET_PASSWORD_NAMESPACE)

    async def create_reset_token(self, params: Mapping[str, Any]) -> Outcome:
        config = self.sessions.config
        email = params.get("email")
        user = config.users.get_by(email=email) if email else None
        if user is None:
            logger.info("reset_password_user_not_found")
            return Outcome.failure(None, "user_not_found")
        token = config.prefixed(str(uuid.uuid4()))
        await self._store().put(token, user_id_of(user), config.reset_password_token_ttl)
        logger.info("reset_password_token_created", user_id=user_id_of(user), token=token)
        if self.deliver is not None:
            delivered = self.deliver(user, token)
            if inspect.isawaitable(delivered):
                await delivered
        return Outcome.success(None, {"token": token, "user": user})

    async def user_from_token(self, token: str) -> Optional[Any]:
        """User a reset token belongs to, without using the token up."""
        if not token:
            return None
        user_id = await self._store().get(token)
        if user_id is NOT_FOUND:
            return None
        return self.sessions.config.users.get_by(id=user_id)

    async def reset_password(
        self, state: RequestState, token: str, params: Mapping[str, Any]
    ) -> Outcome:
        """Set a new password with ``token`` and start a fresh session.

        The token is taken from the store only once the new password is
        acceptable, so a rejected password leaves the link usable.
        """
        users = self.sessions.config.users
        if await self.user_from_token(token) is None:
            return Outcome.failure(state, "invalid_token")
        password = params.get("password") or ""
        confirmation = params.get("password_confirmation")
        if not password or (confirmation is not None and confirmation != password):
            return Outcome.failure(state, "invalid_password")
        user_id = await self._store().take(token)
        user = users.get_by(id=user_id) if user_id is not NOT_FOUND else None
        if user is None:
            return Outcome.failure(state, "invalid_token")
        updated = users.update(user, password=password)
        await self.sessions.rotate(state, updated)
        logger.info("password_reset", user_id=user_id_of(updated))
        return Outcome.success(state, updated)


class ResetPasswordController(Controller):
    """``create`` sends a reset link; ``edit`` checks it; ``update`` uses it."""

    name = "reset_password"

    def __init__(self, extension: ResetPasswordExtension, registry: ExtensionRegistry) -> None:
        super().__init__(extension.sessions, registry)
        self.extension = extension
        self.actions = {
            "create": (self.process_create, self.respond_create),
            "edit": (self.process_edit, self.respond_token),
            "update": (self.process_update, self.respond_token),
        }

    def _signed_in(self, state: RequestState) -> Optional[Outcome]:
        if state.current_user(self.config) is None:
            return None
        state.put_flash("error", self.message("user_already_authenticated", state))
        return Outcome.failure(state, "already_authenticated")

    async def process_create(self, state: RequestState, params: Mapping[str, Any]) -> Outcome:
        refused = self._signed_in(state)
        if refused:
            return refused
        result = await self.extension.create_reset_token(params.get("user") or params)
        result.state = state
        return result

    async def respond_create(self, outcome: Outcome) -> Outcome:
        # Same answer whether or not the account exists
        if outcome.reason != "already_authenticated":
            outcome.state.put_flash("info", self.message("email_has_been_sent", outcome.state))
        return outcome

    async def process_edit(self, state: RequestState, params: Mapping[str, Any]) -> Outcome:
        refused = self._signed_in(state)
        if refused:
            return refused
        user = await self.extension.user_from_token(str(params.get("id") or ""))
        if user is None:
            return Outcome.failure(state, "invalid_token")
        return Outcome.success(state, user)

    async def process_update(self, state: RequestState, params: Mapping[str, Any]) -> Outcome:
        refused = self._signed_in(state)
        if refused:
            return refused
        token = str(params.get("id") or "")
        return await self.extension.reset_password(state, token, params.get("user") or params)

    async def respond_token(self, outcome: Outcome) -> Outcome:
        state = outcome.state
        if outcome.reason == "invalid_token":
            state.put_flash("error", self.message("invalid_token", state))
        elif outcome.reason == "invalid_password":
            state.put_flash("error", self.message("password_reset_failed", state))
        elif outcome.ok and state.current_user(self.config) is outcome.value:
            state.put_flash("info", self.message("password_has_been_reset", state))
        return outcome


ExtensionFactory = Callable[[SessionManager, PersistentTokenManager], Extension]

EXTENSIONS: Dict[str, ExtensionFactory] = {
    "persistent_session": lambda sessions, tokens: PersistentSessionExtension(tokens),
    "email_confirmation": lambda sessions, tokens: EmailConfirmationExtension(sessions),
    "reset_password": lambda sessions, tokens: ResetPasswordExtension(sessions),
}


def build_registry(
    names: Sequence[str],
    sessions: SessionManager,
    tokens: PersistentTokenManager,
    *,
    extra: Sequence[Extension] = (),
    available: Optional[Mapping[str, ExtensionFactory]] = None,
) -> ExtensionRegistry:
    """Build the registry from extension names, in order, then ``extra``."""
    factories = EXTENSIONS if available is None else available
    extensions = []
    for name in names:
        factory = factories.get(name)
        if factory is None:
            raise ConfigurationError(
                f"Unknown extension {name!r}", detail={"extension": name}
            )
        extensions.append(factory(sessions, tokens))
    extensions.extend(extra)
    registry = ExtensionRegistry(extensions)
    logger.info("extensions_registered", extensions=list(registry.names))
    return registry


__all__ = [
    "ConfirmationController",
    "EXTENSIONS",
    "EmailConfirmationExtension",
    "PersistentSessionExtension",
    "RESET_PASSWORD_NAMESPACE",
    "ResetPasswordController",
    "ResetPasswordExtension",
    "build_registry",
]
