"""Action pipeline shared by authentication controllers.

Every action runs as::

    before_process hooks -> process -> before_respond hooks -> respond

A :class:`Halt` from any hook skips everything after it and its value is
returned as the action result. Actions are looked up in an explicit table on
each controller.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from latchkey.config import ConfigContext
from latchkey.errors import ConfigurationError
from latchkey.logging import get_logger
from latchkey.request import RequestState
from latchkey.service.extensions import ExtensionRegistry, Halt, HookContext, Stage
from latchkey.service.outcome import Outcome
from latchkey.service.session import AuthPlug, user_id_of
from latchkey.storage.errors import ConstraintViolation

logger = get_logger(__name__)

Process = Callable[[RequestState, Mapping[str, Any]], Awaitable[Outcome]]
Respond = Callable[[Outcome], Awaitable[Any]]

_EDITABLE_FIELDS = ("email", "password")


async def authenticate_user(
    plug: AuthPlug, state: RequestState, params: Mapping[str, Any]
) -> Outcome:
    """Check credentials and, on success, start a new session."""
    user = plug.config.users.authenticate(params)
    if user is None:
        logger.info("authentication_failed")
        return Outcome.failure(state, "invalid_credentials")
    await plug.do_create(state, user)
    if state.current_user(plug.config) is not user:
        return Outcome.failure(state, "session_not_created", user)
    logger.info("authentication_succeeded", user_id=user_id_of(user))
    return Outcome.success(state, user)


async def clear_authenticated_user(plug: AuthPlug, state: RequestState) -> Outcome:
    await plug.do_delete(state)
    return Outcome.success(state)


async def create_user(
    plug: AuthPlug, state: RequestState, params: Mapping[str, Any]
) -> Outcome:
    """Register a user and sign them in."""
    try:
        user = plug.config.users.register(params)
    except ConstraintViolation as exc:
        logger.info("user_registration_failed", field=exc.detail.get("field"))
        return Outcome.failure(state, "invalid_user", exc.detail)
    await plug.do_create(state, user)
    return Outcome.success(state, user)


async def update_user(
    plug: AuthPlug, state: RequestState, params: Mapping[str, Any]
) -> Outcome:
    """Change the current user's e-mail or password.

    On success the session is rotated, so the id that carried the old
    credentials stops working. On failure the session is left as it was.
    """
    user = state.current_user(plug.config)
    if user is None:
        return Outcome.failure(state, "not_authenticated")
    changes = {field: params[field] for field in _EDITABLE_FIELDS if params.get(field)}
    if not changes:
        return Outcome.failure(state, "invalid_user", {"field": None})
    try:
        updated = plug.config.users.update(user, **changes)
    except ConstraintViolation as exc:
        logger.info("user_update_failed", user_id=user_id_of(user), field=exc.detail.get("field"))
        return Outcome.failure(state, "invalid_user", exc.detail)
    await plug.rotate(state, updated)
    logger.info("user_updated", user_id=user_id_of(updated), fields=sorted(changes))
    return Outcome.success(state, updated)


async def delete_user(plug: AuthPlug, state: RequestState) -> Outcome:
    """Delete the current user and end their session."""
    user = state.current_user(plug.config)
    if user is None:
        return Outcome.failure(state, "not_authenticated")
    plug.config.users.delete(user)
    await plug.do_delete(state)
    logger.info("user_deleted", user_id=user_id_of(user))
    return Outcome.success(state, user)


class Controller:
    name: str = ""

    def __init__(
        self,
        plug: AuthPlug,
        registry: Optional[ExtensionRegistry] = None,
    ) -> None:
        self.plug = plug
        self.registry = registry or plug.registry
        self.actions: Dict[str, Tuple[Process, Respond]] = {}

    @property
    def config(self) -> ConfigContext:
        return self.plug.config

    def message(self, name: str, state: RequestState) -> str:
        return self.registry.message(name, state, self.config)

    async def run(
        self, action: str, state: RequestState, params: Optional[Mapping[str, Any]] = None
    ) -> Any:
        try:
            process, respond = self.actions[action]
        except KeyError:
            raise ConfigurationError(
                f"{self.name} controller has no action {action!r}",
                detail={"controller": self.name, "action": action},
            ) from None
        if params is not None:
            state.params = dict(params)
        state.put_config(self.config)

        context = HookContext(
            stage=Stage.BEFORE_PROCESS.value,
            config=self.config,
            controller=self.name,
            action=action,
        )
        state_or_halt = await self.registry.dispatch(Stage.BEFORE_PROCESS, state, context)
        if isinstance(state_or_halt, Halt):
            return state_or_halt.value

        results = await process(state_or_halt, state_or_halt.params)

        context = HookContext(
            stage=Stage.BEFORE_RESPOND.value,
            config=self.config,
            controller=self.name,
            action=action,
        )
        results = await self.registry.dispatch(Stage.BEFORE_RESPOND, results, context)
        if isinstance(results, Halt):
            return results.value
        return await respond(results)


class SessionController(Controller):
    """Sign in (``create``) and sign out (``delete``)."""

    name = "session"

    def __init__(self, plug: AuthPlug, registry: Optional[ExtensionRegistry] = None) -> None:
        super().__init__(plug, registry)
        self.actions = {
            "create": (self.process_create, self.respond_create),
            "delete": (self.process_delete, self.respond_delete),
        }

    async def process_create(self, state: RequestState, params: Mapping[str, Any]) -> Outcome:
        user_params = params.get("user") or params
        return await authenticate_user(self.plug, state, user_params)

    async def respond_create(self, outcome: Outcome) -> Outcome:
        state = outcome.state
        if outcome.ok:
            state.put_flash("info", self.message("signed_in", state))
        else:
            state.put_flash("error", self.message("invalid_credentials", state))
        return outcome

    async def process_delete(self, state: RequestState, params: Mapping[str, Any]) -> Outcome:
        if state.current_user(self.config) is None:
            return Outcome.failure(state, "not_authenticated")
        return await clear_authenticated_user(self.plug, state)

    async def respond_delete(self, outcome: Outcome) -> Outcome:
        state = outcome.state
        if outcome.ok:
            state.put_flash("info", self.message("signed_out", state))
        else:
            state.put_flash("error", self.message("user_not_authenticated", state))
        return outcome


__all__ = [
    "Controller",
    "SessionController",
    "authenticate_user",
    "clear_authenticated_user",
    "create_user",
    "delete_user",
    "update_user",
]
