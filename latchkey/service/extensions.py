"""Extension hooks composed around authentication operations.

Extensions are registered once, in order, when the runtime is built. Two
resolution rules apply and must not be confused:

* Broadcast stages (``before_process``, ``before_respond``, ``before_create``,
  ``before_delete``): every hook registered for the stage runs, in
  registration order, each receiving the previous hook's result. Name
  collisions do not suppress earlier hooks.
* Named lookups (message functions and similar values): the extension
  registered last wins.

A hook may return :class:`Halt` to stop the remaining hooks and the action
that would follow them. Hook errors propagate to the caller.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from latchkey.errors import ConfigurationError
from latchkey.logging import get_logger

if TYPE_CHECKING:
    from latchkey.config import ConfigContext
    from latchkey.request import RequestState

logger = get_logger(__name__)

_MISSING = object()


class Stage(str, Enum):
    BEFORE_PROCESS = "before_process"
    BEFORE_RESPOND = "before_respond"
    BEFORE_CREATE = "before_create"
    BEFORE_DELETE = "before_delete"


@dataclass(frozen=True)
class Halt:
    """Returned by a hook to short-circuit the pipeline with ``value``."""

    value: Any


@dataclass(frozen=True)
class HookContext:
    stage: str
    config: Optional["ConfigContext"] = None
    controller: Optional[str] = None
    action: Optional[str] = None
    user: Any = None
    registry: Optional["ExtensionRegistry"] = None


@dataclass(frozen=True)
class Hook:
    extension: str
    stage: str
    callback: Callable[..., Any]
    controller: Optional[str] = None
    action: Optional[str] = None

    def applies_to(self, context: HookContext) -> bool:
        if self.controller is not None and self.controller != context.controller:
            return False
        if self.action is not None and self.action != context.action:
            return False
        return True


def hook(
    stage: Stage | str,
    *,
    controller: Optional[str] = None,
    action: Optional[str] = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Mark an :class:`Extension` method as a hook for ``stage``.

    The method is called as ``method(value, context)`` and returns the value
    handed to the next hook, or a :class:`Halt`. Returning ``None`` passes
    ``value`` through unchanged.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        func._latchkey_hook = (_stage_name(stage), controller, action)  # type: ignore[attr-defined]
        return func

    return decorator


def _stage_name(stage: Stage | str) -> str:
    return stage.value if isinstance(stage, Stage) else str(stage)


class Extension:
    """Base class for extension modules.

    Subclasses declare hooks with the :func:`hook` decorator and named
    lookups in ``messages``. Ad hoc extensions can be built directly:
    ``Extension("audit", hooks=[(Stage.BEFORE_DELETE, fn)])``.
    """

    name: str = ""
    messages: Mapping[str, Any] = {}

    def __init__(
        self,
        name: Optional[str] = None,
        *,
        hooks: Iterable[Tuple[Stage | str, Callable[..., Any]]] = (),
        lookups: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if name:
            self.name = name
        if not self.name:
            raise ConfigurationError("Extension requires a name")
        self._extra_hooks = [(_stage_name(stage), fn) for stage, fn in hooks]
        self._extra_lookups = dict(lookups or {})

    def hooks(self) -> List[Hook]:
        declared: List[Hook] = []
        seen: set[str] = set()
        # Walk base classes first so hooks follow definition order
        for klass in reversed(type(self).__mro__):
            for attr, member in vars(klass).items():
                marker = getattr(member, "_latchkey_hook", None)
                if marker is None or attr in seen:
                    continue
                seen.add(attr)
                stage, controller, action = marker
                declared.append(
                    Hook(
                        extension=self.name,
                        stage=stage,
                        callback=getattr(self, attr),
                        controller=controller,
                        action=action,
                    )
                )
        declared.extend(
            Hook(extension=self.name, stage=stage, callback=fn)
            for stage, fn in self._extra_hooks
        )
        return declared

    def lookups(self) -> Dict[str, Any]:
        values = dict(type(self).messages)
        values.update(self._extra_lookups)
        return values


class Messages:
    """Fallback user-facing messages."""

    def signed_in(self, state: "RequestState") -> str:
        return "Signed in successfully."

    def signed_out(self, state: "RequestState") -> str:
        return "Signed out successfully."

    def invalid_credentials(self, state: "RequestState") -> str:
        return "The provided login details did not work. Please verify your credentials, and try again."

    def user_not_authenticated(self, state: "RequestState") -> str:
        return "You're not authenticated."

    def user_already_authenticated(self, state: "RequestState") -> str:
        return "You're already authenticated."


class ExtensionRegistry:
    """Immutable composition of extensions, built once at startup."""

    def __init__(self, extensions: Sequence[Extension] = ()) -> None:
        hooks: Dict[str, List[Hook]] = {}
        lookups: Dict[str, Tuple[str, Any]] = {}
        names: List[str] = []
        for extension in extensions:
            if extension.name in names:
                raise ConfigurationError(
                    f"Extension {extension.name!r} registered twice",
                    detail={"extension": extension.name},
                )
            names.append(extension.name)
            for entry in extension.hooks():
                hooks.setdefault(entry.stage, []).append(entry)
            for name, value in extension.lookups().items():
                lookups[name] = (extension.name, value)
        self.extensions: Tuple[Extension, ...] = tuple(extensions)
        self.names: Tuple[str, ...] = tuple(names)
        self._hooks = MappingProxyType({stage: tuple(found) for stage, found in hooks.items()})
        self._lookups = MappingProxyType(lookups)

    def hooks_for(self, stage: Stage | str) -> Tuple[Hook, ...]:
        return self._hooks.get(_stage_name(stage), ())

    async def dispatch(
        self, stage: Stage | str, value: Any, context: Optional[HookContext] = None
    ) -> Any:
        """Run every hook for ``stage``; returns the final value or a Halt."""
        stage_name = _stage_name(stage)
        context = replace(context or HookContext(stage=stage_name), registry=self)
        for entry in self.hooks_for(stage_name):
            if not entry.applies_to(context):
                continue
            try:
                result = entry.callback(value, context)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                logger.error(
                    "extension_hook_failed",
                    extension=entry.extension,
                    stage=stage_name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise
            if isinstance(result, Halt):
                logger.info("extension_pipeline_halted", extension=entry.extension, stage=stage_name)
                return result
            if result is not None:
                value = result
        return value

    def lookup(self, name: str, default: Any = _MISSING) -> Any:
        found = self._lookups.get(name)
        if found is None:
            if default is _MISSING:
                raise KeyError(name)
            return default
        return found[1]

    def provider(self, name: str) -> Optional[str]:
        found = self._lookups.get(name)
        return found[0] if found else None

    def message(
        self, name: str, state: "RequestState", config: Optional["ConfigContext"] = None
    ) -> str:
        """Resolve a message: configured backend, then extensions, then defaults."""
        backend = config.messages_backend if config is not None else None
        if backend is not None and callable(getattr(backend, name, None)):
            return getattr(backend, name)(state)
        func = self.lookup(name, None)
        if func is None:
            func = getattr(Messages(), name, None)
        if func is None:
            raise ConfigurationError(f"No message named {name!r}", detail={"message": name})
        return func(state) if callable(func) else func


__all__ = [
    "Extension",
    "ExtensionRegistry",
    "Halt",
    "Hook",
    "HookContext",
    "Messages",
    "Stage",
    "hook",
]
