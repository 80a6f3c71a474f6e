"""Store contract shared by every cache backend.

A store maps namespaced string keys to opaque values with an optional TTL in
seconds. A miss is the ``NOT_FOUND`` sentinel, never an exception. Backends
must make ``get``/``put``/``delete``/``take`` linearizable per key; ``take``
reads and deletes in one step so that exactly one caller observes a value.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


class _NotFound:
    _instance: Optional["_NotFound"] = None

    def __new__(cls) -> "_NotFound":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND: Any = _NotFound()


@runtime_checkable
class Store(Protocol):
    async def get(self, key: str) -> Any: ...

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def take(self, key: str) -> Any: ...

    async def open(self) -> None: ...

    async def close(self) -> None: ...


def validate_ttl(ttl: Optional[int]) -> Optional[int]:
    if ttl is None:
        return None
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0:
        raise ValueError(f"ttl must be a positive number of seconds, got {ttl!r}")
    return ttl


class BaseStore:
    """Key prefixing shared by backends; ``prefix`` isolates deployments."""

    def __init__(self, *, prefix: Optional[str] = None) -> None:
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}" if self.prefix else key

    def namespaced(self, namespace: str) -> "StoreNamespace":
        return StoreNamespace(self, namespace)

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None


class StoreNamespace:
    """View of a store that prefixes every key with ``namespace``.

    Session ids and persistent tokens live side by side in one backend; the
    namespace keeps a token from ever resolving as a session id.
    """

    def __init__(self, store: Store, namespace: str) -> None:
        self.store = store
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Any:
        return await self.store.get(self._key(key))

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.store.put(self._key(key), value, ttl)

    async def delete(self, key: str) -> None:
        await self.store.delete(self._key(key))

    async def take(self, key: str) -> Any:
        return await self.store.take(self._key(key))


__all__ = ["NOT_FOUND", "Store", "BaseStore", "StoreNamespace", "validate_ttl"]
