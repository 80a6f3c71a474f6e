from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Sequence
from urllib.parse import urlparse, urlunparse

from latchkey.config import Settings, StoreBackend, get_settings, reset_settings_cache
from latchkey.logging import get_logger
from latchkey.request import RequestState
from latchkey.service.builtin import (
    ConfirmationController,
    EmailConfirmationExtension,
    ResetPasswordController,
    ResetPasswordExtension,
    build_registry,
)
from latchkey.service.controller import SessionController
from latchkey.service.extensions import Extension
from latchkey.service.persistent import PersistentTokenManager
from latchkey.service.session import SessionManager
from latchkey.service.users import MemoryUserRepository, UserRepository
from latchkey.storage.base import Store
from latchkey.storage.registry import build_store

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Application root: owns the store and wires the authentication services.

    The store is constructed here and handed to every consumer; ``open`` and
    ``close`` bracket its lifetime (for the in-memory store, the TTL sweep).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Store] = None,
        users: Optional[UserRepository] = None,
        extra_extensions: Sequence[Extension] = (),
        messages_backend: Any = None,
        reset_password_delivery: Optional[Callable[[Any, str], Any]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.cache_store_backend.value,
            extensions=self.settings.extensions,
        )
        if store is None:
            try:
                store = build_store(self.settings)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_backend=self.settings.cache_store_backend.value,
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.store = store
        self.users = users if users is not None else MemoryUserRepository()
        self.config = self.settings.to_context(
            cache_store_backend=self.store,
            users=self.users,
            messages_backend=messages_backend,
        )
        self.sessions = SessionManager(self.config)
        self.tokens = PersistentTokenManager(self.config, self.sessions)
        self.registry = build_registry(
            self.settings.extensions, self.sessions, self.tokens, extra=extra_extensions
        )
        # Session create/delete stages consult the same registry as controllers
        self.sessions.registry = self.registry
        self.session_controller = SessionController(self.sessions, self.registry)
        self.confirmation_controller: Optional[ConfirmationController] = None
        self.reset_password_controller: Optional[ResetPasswordController] = None
        for extension in self.registry.extensions:
            if isinstance(extension, EmailConfirmationExtension):
                self.confirmation_controller = ConfirmationController(extension, self.registry)
            elif isinstance(extension, ResetPasswordExtension):
                if reset_password_delivery is not None:
                    extension.deliver = reset_password_delivery
                self.reset_password_controller = ResetPasswordController(extension, self.registry)
        self._opened = False

    @property
    def persistent_sessions_enabled(self) -> bool:
        return "persistent_session" in self.registry.names

    async def open(self) -> None:
        if self._opened:
            return
        await self.store.open()
        self._opened = True
        logger.info("runtime_opened")

    async def close(self) -> None:
        if not self._opened:
            return
        await self.store.close()
        self._opened = False
        logger.info("runtime_closed")

    async def load_user(self, state: RequestState) -> RequestState:
        """Resolve the current user: session first, then remember-me cookie."""
        await self.sessions.call(state)
        if self.persistent_sessions_enabled:
            await self.tokens.authenticate(state)
        return state


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    Only the in-memory backend may be reset; its sweep task is bound to the
    event loop that opened it, so a fresh store is created instead.
    """
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if settings.cache_store_backend is not StoreBackend.MEMORY:
            raise RuntimeError("runtime reset is only allowed with the memory store")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
