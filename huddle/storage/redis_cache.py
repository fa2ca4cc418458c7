from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed JSON values with a TTL, used by the profile memoizer.

    Every key is written under ``namespace`` so several deployments can
    share one Redis database.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "huddle",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def verify_connection(self) -> None:
        # Sync ping so startup and health checks never touch the async pool
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        payload = json.dumps(value, separators=(",", ":"))
        await self.client.set(self._key(key), payload, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
