from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Protocol

from fastapi import Request, Response
from redis.asyncio import Redis

from eventlens.core.config import Settings
from eventlens.core.errors import RateLimited, ServiceUnavailable
from eventlens.services.enrichment import resolve_address


logger = logging.getLogger(__name__)

SCOPE_GLOBAL = "global"
SCOPE_INGEST = "ingest"
SCOPE_QUERY = "query"
SCOPE_AUTH = "auth"

_SCOPE_MESSAGES: dict[str, str] = {
    SCOPE_GLOBAL: "Too many requests from this IP, please try again later.",
    SCOPE_INGEST: "Event collection rate limit exceeded.",
    SCOPE_QUERY: "Analytics query rate limit exceeded.",
    SCOPE_AUTH: "Too many authentication attempts, please try again later.",
}


@dataclass(frozen=True)
class WindowConfig:
    # Fixed window: at most `limit` hits per `window_ms`, hard reset at the boundary.
    limit: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and reset hints for a throttled identity.
    allowed: bool
    scope: str
    limit: int
    remaining: int
    reset_after_ms: int


class WindowStore(Protocol):
    # Atomically increment the counter for `key` and return the post-increment count.
    async def incr(self, key: str, ttl_ms: int) -> int: ...


_FIXED_WINDOW_LUA = r"""
local count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("PEXPIRE", KEYS[1], tonumber(ARGV[1]))
end
return count
"""


class RedisWindowStore:
    def __init__(self, client: Redis) -> None:
        self._client = client

    async def incr(self, key: str, ttl_ms: int) -> int:
        # INCR and the first-hit PEXPIRE run in one script so concurrent hits never lose counts.
        result = await self._client.eval(_FIXED_WINDOW_LUA, 1, key, ttl_ms)
        return int(result)


class MemoryWindowStore:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def incr(self, key: str, ttl_ms: int) -> int:
        async with self._lock:
            now = self._time_provider()
            self._prune(now)
            count, expires_at = self._counters.get(key, (0, now + ttl_ms / 1000.0))
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]


def window_start_ms(now_ms: int, window_ms: int) -> int:
    # Align windows to fixed boundaries so every backend agrees on the reset time.
    return now_ms - (now_ms % window_ms)


class RateLimiter:
    def __init__(
        self,
        *,
        store: WindowStore,
        prefix: str,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._store = store
        self._prefix = prefix
        self._time_provider = time_provider or time.time

    async def hit(self, *, scope: str, identity: str, config: WindowConfig) -> RateLimitDecision:
        now_ms = int(self._time_provider() * 1000)
        start_ms = window_start_ms(now_ms, config.window_ms)
        reset_after_ms = start_ms + config.window_ms - now_ms
        key = f"{self._prefix}:{scope}:{identity}:{start_ms}"
        # Keep counters a little past the boundary so clock skew never resurrects a window.
        count = await self._store.incr(key, config.window_ms + 1000)
        return RateLimitDecision(
            allowed=count <= config.limit,
            scope=scope,
            limit=config.limit,
            remaining=max(config.limit - count, 0),
            reset_after_ms=reset_after_ms,
        )


def build_rate_limiter(
    settings: Settings,
    *,
    redis_client: Redis | None = None,
    time_provider: Callable[[], float] | None = None,
) -> RateLimiter:
    backend = settings.rate_limit_backend.lower()
    if backend == "memory":
        store: WindowStore = MemoryWindowStore(time_provider=time_provider)
    elif backend == "redis":
        if redis_client is None:
            raise ValueError("redis rate limit backend requires a Redis client")
        store = RedisWindowStore(redis_client)
    else:
        raise ValueError(f"Unsupported rate limit backend: {settings.rate_limit_backend}")
    return RateLimiter(store=store, prefix=settings.rl_redis_prefix, time_provider=time_provider)


def window_for_scope(scope: str, settings: Settings) -> WindowConfig:
    # Select the fixed-window budget for the given scope.
    if scope == SCOPE_INGEST:
        return WindowConfig(settings.rl_ingest_max, settings.rl_ingest_window_ms)
    if scope == SCOPE_QUERY:
        return WindowConfig(settings.rl_query_max, settings.rl_query_window_ms)
    if scope == SCOPE_AUTH:
        return WindowConfig(settings.rl_auth_max, settings.rl_auth_window_ms)
    return WindowConfig(settings.rl_global_max, settings.rl_global_window_ms)


def identity_for_scope(scope: str, request: Request, settings: Settings) -> str:
    # Ingestion is budgeted per credential secret; everything else per caller address.
    address = resolve_address(request.headers, request.client.host if request.client else None)
    if scope == SCOPE_INGEST:
        secret = request.headers.get(settings.auth_api_key_header)
        if secret:
            return f"key:{secret}"
    return f"ip:{address}"


def _apply_headers(response: Response, decision: RateLimitDecision) -> None:
    # Report the tightest scope evaluated for this request.
    current = response.headers.get("RateLimit-Remaining")
    if current is not None and int(current) <= decision.remaining:
        return
    response.headers["RateLimit-Limit"] = str(decision.limit)
    response.headers["RateLimit-Remaining"] = str(decision.remaining)
    response.headers["RateLimit-Reset"] = str(int(math.ceil(decision.reset_after_ms / 1000.0)))


def _throttle_error(decision: RateLimitDecision) -> RateLimited:
    # Construct a stable 429 with retry hints in standard headers.
    reset_s = int(math.ceil(decision.reset_after_ms / 1000.0))
    headers = {
        "Retry-After": str(reset_s),
        "RateLimit-Limit": str(decision.limit),
        "RateLimit-Remaining": "0",
        "RateLimit-Reset": str(reset_s),
    }
    return RateLimited(
        _SCOPE_MESSAGES.get(decision.scope, RateLimited.default_message),
        retry_after_ms=decision.reset_after_ms,
        headers=headers,
    )


async def enforce_rate_limit(*, request: Request, response: Response, scope: str) -> None:
    # Enforce the scope budget before any downstream work with optional fail-open behavior.
    resources = request.app.state.resources
    settings = resources.settings
    if not settings.rate_limit_enabled:
        return
    identity = identity_for_scope(scope, request, settings)
    try:
        decision = await resources.limiter.hit(
            scope=scope,
            identity=identity,
            config=window_for_scope(scope, settings),
        )
    except Exception as exc:  # noqa: BLE001 - guard against counter store connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise ServiceUnavailable("Rate limiting unavailable") from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        logger.warning("rate_limit_degraded scope=%s path=%s", scope, request.url.path)
        return

    if decision.allowed:
        _apply_headers(response, decision)
        return

    # Log only the scope and address; ingestion identities embed the secret.
    logger.warning(
        "rate_limited scope=%s path=%s ip=%s",
        scope,
        request.url.path,
        resolve_address(request.headers, request.client.host if request.client else None),
    )
    raise _throttle_error(decision)


def rate_limit(scope: str):
    # Dependency factory so routers declare their throttle scope next to the route.
    async def _dependency(request: Request, response: Response) -> None:
        await enforce_rate_limit(request=request, response=response, scope=scope)

    return _dependency
