from __future__ import annotations

import inspect
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from redis.exceptions import RedisError

from huddle.logging import get_logger
from huddle.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Loader = Callable[[], Union[Any, Awaitable[Any]]]

_MAX_LOCAL_ENTRIES = 10000


class Memoizer:
    """Read-through cache for JSON-serializable values.

    Backed by Redis when one is configured, otherwise by a process-local
    TTL map. A cache outage degrades to calling the loader every time.
    ``None`` results are not cached.
    """

    def __init__(self, cache: Optional[RedisCache] = None) -> None:
        self.cache = cache
        self._local: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    async def get_or_load(self, key: str, ttl_seconds: int, loader: Loader) -> Any:
        hit = await self._get(key)
        if hit is not None:
            return hit
        value = loader()
        if inspect.isawaitable(value):
            value = await value
        if value is not None:
            await self._set(key, value, ttl_seconds)
        return value

    async def invalidate(self, key: str) -> None:
        with self._lock:
            self._local.pop(key, None)
        if self.cache:
            try:
                await self.cache.delete(key)
            except RedisError as exc:
                logger.warning("memo_invalidate_failed", key=key, error=str(exc))

    async def _get(self, key: str) -> Any:
        if self.cache:
            try:
                return await self.cache.get_json(key)
            except RedisError as exc:
                logger.warning("memo_read_failed", key=key, error=str(exc))
                return None
        with self._lock:
            entry = self._local.get(key)
            if not entry:
                return None
            expires_at, value = entry
            if expires_at <= time.monotonic():
                self._local.pop(key, None)
                return None
            return value

    async def _set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self.cache:
            try:
                await self.cache.set_json(key, value, ttl_seconds)
            except RedisError as exc:
                logger.warning("memo_write_failed", key=key, error=str(exc))
            return
        with self._lock:
            if len(self._local) >= _MAX_LOCAL_ENTRIES:
                now = time.monotonic()
                for stale in [k for k, (exp, _) in self._local.items() if exp <= now]:
                    self._local.pop(stale, None)
                if len(self._local) >= _MAX_LOCAL_ENTRIES:
                    self._local.pop(next(iter(self._local)))
            self._local[key] = (time.monotonic() + ttl_seconds, value)
