from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from latchkey.logging import get_logger
from latchkey.storage.base import NOT_FOUND, BaseStore, validate_ttl
from latchkey.storage.errors import StoreError

logger = get_logger(__name__)


class RedisStore(BaseStore):
    """Store backed by Redis, shared by every process of a deployment.

    Values are JSON encoded. Expiry is native (``SET ... EX``), so there is no
    sweep; ``take`` uses ``GETDEL`` so concurrent consumers of one key cannot
    both observe its value.
    """

    # Used when the server predates GETDEL (Redis < 6.2)
    _TAKE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: Optional[str] = None,
        socket_timeout: float = 5.0,
        client: Any = None,
    ) -> None:
        super().__init__(prefix=prefix)
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _encode(value: Any) -> str:
        return json.dumps(value)

    @staticmethod
    def _decode(raw: Optional[str]) -> Any:
        if raw is None:
            return NOT_FOUND
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry - treat as missing
            logger.warning("redis_store_corrupt_value")
            return NOT_FOUND

    async def get(self, key: str) -> Any:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as exc:
            raise StoreError("redis get failed", {"error": str(exc)}) from exc
        return self._decode(raw)

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = validate_ttl(ttl)
        ex = max(1, int(ttl)) if ttl is not None else None
        try:
            await self.client.set(self._key(key), self._encode(value), ex=ex)
        except RedisError as exc:
            raise StoreError("redis put failed", {"error": str(exc)}) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._key(key))
        except RedisError as exc:
            raise StoreError("redis delete failed", {"error": str(exc)}) from exc

    async def take(self, key: str) -> Any:
        full_key = self._key(key)
        try:
            try:
                raw = await self.client.getdel(full_key)
            except ResponseError as exc:
                if "unknown command" not in str(exc).lower():
                    raise
                logger.debug("redis_store_getdel_unsupported")
                raw = await self.client.eval(self._TAKE_SCRIPT, 1, full_key)
        except RedisError as exc:
            raise StoreError("redis take failed", {"error": str(exc)}) from exc
        return self._decode(raw)

    async def open(self) -> None:
        try:
            await self.client.ping()
        except RedisError as exc:
            raise StoreError("redis unreachable", {"error": str(exc)}) from exc
        logger.info("redis_store_opened", prefix=self.prefix)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down."""
        await self.client.close()
        logger.info("redis_store_closed")


__all__ = ["RedisStore"]
