from __future__ import annotations

from typing import Callable, Dict

from latchkey.config import Settings, StoreBackend
from latchkey.errors import ConfigurationError
from latchkey.storage.base import Store
from latchkey.storage.memory import MemoryStore
from latchkey.storage.redis_cache import RedisStore


def _memory(settings: Settings) -> Store:
    return MemoryStore(
        prefix=settings.namespace, sweep_interval=settings.sweep_interval_seconds
    )


def _redis(settings: Settings) -> Store:
    return RedisStore(settings.redis_url, prefix=settings.namespace)


STORE_BACKENDS: Dict[StoreBackend, Callable[[Settings], Store]] = {
    StoreBackend.MEMORY: _memory,
    StoreBackend.REDIS: _redis,
}


def build_store(settings: Settings) -> Store:
    """Construct the configured backend; the caller owns open/close."""
    factory = STORE_BACKENDS.get(settings.cache_store_backend)
    if factory is None:
        raise ConfigurationError(
            f"Unknown cache store backend {settings.cache_store_backend!r}",
            detail={"option": "cache_store_backend"},
        )
    return factory(settings)


__all__ = ["STORE_BACKENDS", "build_store"]
