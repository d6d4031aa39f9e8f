from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from eventlens.apps.api.rate_limit import RateLimiter, build_rate_limiter
from eventlens.core.config import Settings
from eventlens.persistence.db import build_engine, build_sessionmaker
from eventlens.services.aggregation import AnalyticsService
from eventlens.services.auth.credentials import CredentialValidator
from eventlens.services.background import BackgroundRunner
from eventlens.services.cache import CacheStore, build_cache, build_redis_client
from eventlens.services.ingest import EventWriter


logger = logging.getLogger(__name__)

_SHUTDOWN_DRAIN_TIMEOUT_S = 5.0


@dataclass
class AppResources:
    """Process-owned handles shared by every request.

    Built once by the entry point and reached through ``app.state.resources``
    so tests can substitute their own stores without touching module state.
    """

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    cache: CacheStore
    limiter: RateLimiter
    runner: BackgroundRunner
    validator: CredentialValidator
    writer: EventWriter
    analytics: AnalyticsService
    redis: Redis | None = None

    async def aclose(self) -> None:
        # Let detached work finish before its stores go away.
        await self.runner.drain(timeout=_SHUTDOWN_DRAIN_TIMEOUT_S)
        await self.cache.aclose()
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except Exception as exc:  # noqa: BLE001 - shutdown must not fail on a dead connection
                logger.warning("redis_close_failed", exc_info=exc)
        await self.engine.dispose()


def build_resources(
    settings: Settings,
    *,
    time_provider: Callable[[], float] | None = None,
) -> AppResources:
    engine = build_engine(settings)
    session_factory = build_sessionmaker(engine)
    needs_redis = "redis" in {settings.cache_backend.lower(), settings.rate_limit_backend.lower()}
    # One client is shared by the cache and the throttle; resources own its lifetime.
    redis_client = build_redis_client(settings) if needs_redis else None
    cache = build_cache(settings, redis_client=redis_client, time_provider=time_provider)
    limiter = build_rate_limiter(settings, redis_client=redis_client, time_provider=time_provider)
    runner = BackgroundRunner()
    return AppResources(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        cache=cache,
        limiter=limiter,
        runner=runner,
        validator=CredentialValidator(session_factory=session_factory, runner=runner),
        writer=EventWriter(cache=cache, runner=runner, cache_prefix=settings.cache_prefix),
        analytics=AnalyticsService(
            cache=cache,
            cache_prefix=settings.cache_prefix,
            summary_ttl_s=settings.cache_summary_ttl_s,
            user_stats_ttl_s=settings.cache_user_stats_ttl_s,
            recent_limit=settings.user_stats_recent_limit,
            top_events_limit=settings.dashboard_top_events_limit,
        ),
        redis=redis_client,
    )
