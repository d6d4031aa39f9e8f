from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Protocol

from redis.asyncio import Redis

from eventlens.core.config import Settings
from eventlens.core.errors import CacheError


logger = logging.getLogger(__name__)

_SCAN_BATCH = 500


class CacheStore(Protocol):
    # Best-effort string cache: failures read as misses and writes become no-ops.
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_s: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...

    async def aclose(self) -> None: ...


def _escape_glob(value: str) -> str:
    # Keep literal prefixes literal inside Redis MATCH patterns.
    for char in ("\\", "*", "?", "[", "]"):
        value = value.replace(char, f"\\{char}")
    return value


class RedisCache:
    def __init__(self, client: Redis, *, owns_client: bool = False) -> None:
        self._client = client
        # Shared clients are closed by whoever built them.
        self._owns_client = owns_client

    async def _run(self, operation: str, key: str, call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await call()
        except Exception as exc:  # noqa: BLE001 - any backend failure degrades to a miss
            raise CacheError(f"cache {operation} failed key={key}") from exc

    async def get(self, key: str) -> str | None:
        try:
            return await self._run("get", key, lambda: self._client.get(key))
        except CacheError as exc:
            logger.warning("cache_get_failed key=%s", key, exc_info=exc.__cause__)
            return None

    async def set(self, key: str, value: str, ttl_s: int) -> None:
        try:
            await self._run("set", key, lambda: self._client.set(key, value, ex=max(1, int(ttl_s))))
        except CacheError as exc:
            logger.warning("cache_set_failed key=%s", key, exc_info=exc.__cause__)

    async def delete(self, key: str) -> None:
        try:
            await self._run("delete", key, lambda: self._client.delete(key))
        except CacheError as exc:
            logger.warning("cache_delete_failed key=%s", key, exc_info=exc.__cause__)

    async def _delete_matching(self, pattern: str) -> int:
        # SCAN instead of KEYS so large keyspaces never block the server.
        removed = 0
        batch: list[str] = []
        async for key in self._client.scan_iter(match=pattern, count=_SCAN_BATCH):
            batch.append(key)
            if len(batch) >= _SCAN_BATCH:
                removed += int(await self._client.delete(*batch))
                batch = []
        if batch:
            removed += int(await self._client.delete(*batch))
        return removed

    async def delete_prefix(self, prefix: str) -> int:
        pattern = f"{_escape_glob(prefix)}*"
        try:
            return int(await self._run("delete_prefix", pattern, lambda: self._delete_matching(pattern)))
        except CacheError as exc:
            logger.warning("cache_delete_prefix_failed pattern=%s", pattern, exc_info=exc.__cause__)
            return 0

    async def aclose(self) -> None:
        if not self._owns_client:
            return
        try:
            await self._client.aclose()
        except Exception as exc:  # noqa: BLE001 - shutdown must not fail on a dead connection
            logger.warning("cache_close_failed", exc_info=exc)


class MemoryCache:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        # Allow injecting time for deterministic TTL tests.
        self._time_provider = time_provider or time.time
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._time_provider():
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl_s: int) -> None:
        async with self._lock:
            self._entries[key] = (self._time_provider() + max(1, int(ttl_s)), value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    async def aclose(self) -> None:
        async with self._lock:
            self._entries.clear()


def build_redis_client(settings: Settings) -> Redis:
    return Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


def build_cache(
    settings: Settings,
    *,
    redis_client: Redis | None = None,
    time_provider: Callable[[], float] | None = None,
) -> CacheStore:
    backend = settings.cache_backend.lower()
    if backend == "memory":
        return MemoryCache(time_provider=time_provider)
    if backend != "redis":
        raise ValueError(f"Unsupported cache backend: {settings.cache_backend}")
    if redis_client is None:
        return RedisCache(build_redis_client(settings), owns_client=True)
    return RedisCache(redis_client)
