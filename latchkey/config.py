from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterator, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from latchkey.errors import ConfigurationError
from latchkey.logging import get_logger

if TYPE_CHECKING:
    from latchkey.service.users import UserRepository
    from latchkey.storage.base import Store

logger = get_logger(__name__)

DEFAULT_SESSION_COOKIE_KEY = "auth"
DEFAULT_PERSISTENT_COOKIE_KEY = "persistent_session_cookie"
# 30 days in seconds
DEFAULT_PERSISTENT_COOKIE_MAX_AGE = 60 * 60 * 24 * 30
DEFAULT_SESSION_TTL_SECONDS = 30 * 60
DEFAULT_CURRENT_USER_KEY = "current_user"
# Reset password links stay valid for one day
DEFAULT_RESET_PASSWORD_TOKEN_TTL = 60 * 60 * 24

_MISSING = object()


class StoreBackend(str, Enum):
    """Store backends selectable by name from the environment."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-level settings read once at startup."""

    cache_store_backend: StoreBackend = env_field(
        StoreBackend.MEMORY, "CACHE_STORE_BACKEND"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    namespace: str | None = env_field(
        None,
        "LATCHKEY_NAMESPACE",
        description="Prefix for store keys and cookie names (multi-deployment isolation)",
    )
    session_cookie_key: str = env_field(DEFAULT_SESSION_COOKIE_KEY, "SESSION_COOKIE_KEY")
    session_ttl_seconds: int = env_field(
        DEFAULT_SESSION_TTL_SECONDS,
        "SESSION_TTL_SECONDS",
        description="Session lifetime in seconds; 0 keeps sessions until logout",
    )
    persistent_session_cookie_key: str | None = env_field(
        None, "PERSISTENT_SESSION_COOKIE_KEY"
    )
    persistent_session_cookie_max_age: int = env_field(
        DEFAULT_PERSISTENT_COOKIE_MAX_AGE, "PERSISTENT_SESSION_COOKIE_MAX_AGE"
    )
    reset_password_token_ttl_seconds: int = env_field(
        DEFAULT_RESET_PASSWORD_TOKEN_TTL, "RESET_PASSWORD_TOKEN_TTL_SECONDS"
    )
    sweep_interval_seconds: float = env_field(
        60, "SWEEP_INTERVAL_SECONDS", description="Background TTL sweep interval"
    )
    extensions: list[str] = env_field(
        ["persistent_session"],
        "LATCHKEY_EXTENSIONS",
        description="Comma-separated extension names, in registration order",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("extensions", mode="before")
    @classmethod
    def _split_extensions(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [name.strip() for name in value.split(",") if name.strip()]
        return value

    @field_validator("namespace", "persistent_session_cookie_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("session_ttl_seconds", "persistent_session_cookie_max_age")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be zero or positive")
        return value

    @field_validator("reset_password_token_ttl_seconds")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    def to_context(self, **collaborators: Any) -> "ConfigContext":
        """Build the per-operation config from these settings.

        ``collaborators`` supplies runtime objects (``store``, ``users``,
        ``messages_backend``) that cannot come from the environment.
        """
        options: dict[str, Any] = {
            "namespace": self.namespace,
            "session_cookie_key": self.session_cookie_key,
            "session_ttl": self.session_ttl_seconds,
            "persistent_session_cookie_max_age": self.persistent_session_cookie_max_age,
            "reset_password_token_ttl": self.reset_password_token_ttl_seconds,
        }
        if self.persistent_session_cookie_key:
            options["persistent_session_cookie_key"] = self.persistent_session_cookie_key
        options.update(collaborators)
        return ConfigContext(options)


class ConfigContext(Mapping):
    """Read-only option bag handed to every operation.

    Options are validated lazily: a missing required option is only an error
    when an operation actually asks for it via :meth:`fetch`.
    """

    __slots__ = ("_options",)

    def __init__(self, options: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> None:
        merged = dict(options or {})
        merged.update(kwargs)
        self._options = MappingProxyType(merged)

    def __getitem__(self, key: str) -> Any:
        return self._options[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._options)

    def __len__(self) -> int:
        return len(self._options)

    def __repr__(self) -> str:
        return f"ConfigContext({sorted(self._options)})"

    def get(self, key: str, default: Any = None) -> Any:
        value = self._options.get(key, default)
        return default if value is None else value

    def fetch(self, key: str) -> Any:
        value = self._options.get(key, _MISSING)
        if value is _MISSING or value is None:
            logger.error("config_option_missing", option=key)
            raise ConfigurationError(
                f"No {key!r} configuration option found.", detail={"option": key}
            )
        return value

    def merge(self, **overrides: Any) -> "ConfigContext":
        return ConfigContext(self._options, **overrides)

    @property
    def namespace(self) -> Optional[str]:
        return self.get("namespace")

    @property
    def store(self) -> "Store":
        return self.fetch("cache_store_backend")

    @property
    def users(self) -> "UserRepository":
        return self.fetch("users")

    @property
    def current_user_key(self) -> str:
        return self.get("current_user_assigns_key", DEFAULT_CURRENT_USER_KEY)

    @property
    def session_cookie_key(self) -> str:
        key = self.get("session_cookie_key", DEFAULT_SESSION_COOKIE_KEY)
        return self.prefixed(key)

    @property
    def session_ttl(self) -> Optional[int]:
        return self.get("session_ttl", DEFAULT_SESSION_TTL_SECONDS) or None

    @property
    def persistent_cookie_key(self) -> str:
        configured = self.get("persistent_session_cookie_key")
        if configured:
            return configured
        return self.prefixed(DEFAULT_PERSISTENT_COOKIE_KEY)

    @property
    def persistent_cookie_max_age(self) -> int:
        return int(
            self.get("persistent_session_cookie_max_age", DEFAULT_PERSISTENT_COOKIE_MAX_AGE)
        )

    @property
    def reset_password_token_ttl(self) -> int:
        return int(self.get("reset_password_token_ttl", DEFAULT_RESET_PASSWORD_TOKEN_TTL))

    @property
    def messages_backend(self) -> Any:
        return self.get("messages_backend")

    def prefixed(self, value: str) -> str:
        namespace = self.namespace
        return f"{namespace}_{value}" if namespace else value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
