"""Aggregate queries over the event store with a cache-aside layer.

Every query is scoped to the credentials owned by one account and may be
narrowed to a single credential. Cache keys live under a per-account,
per-credential namespace so the event writer can retire them by prefix:

    {prefix}:{account_id}:{credential_id | all}:{kind}:{sha256(params)}
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from eventlens.core.clock import as_utc, isoformat, utc_now
from eventlens.core.errors import NotFound, StorageError, ValidationError
from eventlens.domain.models import Credential, Event
from eventlens.services.cache import CacheStore
from eventlens.services.usage_dashboard import build_dashboard, dashboard_window


logger = logging.getLogger(__name__)

KIND_SUMMARY = "summary"
KIND_USER_STATS = "user"
ALL_CREDENTIALS = "all"
UNKNOWN_USER_MESSAGE = "User not found or no events tracked"


@dataclass(frozen=True)
class AnalyticsScope:
    # Account-wide when credential_id is None, otherwise narrowed to one credential.
    account_id: str
    credential_id: str | None = None


@dataclass(frozen=True)
class CachedResult:
    data: dict[str, Any]
    cached: bool


def cache_namespace(prefix: str, account_id: str, credential_segment: str) -> str:
    return f"{prefix}:{account_id}:{credential_segment}:"


def invalidation_prefixes(prefix: str, account_id: str, credential_id: str) -> tuple[str, str]:
    # A write under one credential stales its own namespace and the account-wide one.
    return (
        cache_namespace(prefix, account_id, credential_id),
        cache_namespace(prefix, account_id, ALL_CREDENTIALS),
    )


def params_digest(params: dict[str, Any]) -> str:
    # Canonical JSON so equal parameter sets always hash to the same key.
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_cache_key(
    prefix: str,
    scope: AnalyticsScope,
    kind: str,
    params: dict[str, Any],
    *,
    credential_filter: str | None = None,
) -> str:
    segment = scope.credential_id or credential_filter or ALL_CREDENTIALS
    key_params = {"scope": scope.credential_id, **params}
    return f"{cache_namespace(prefix, scope.account_id, segment)}{kind}:{params_digest(key_params)}"


def parse_date_bound(raw: str | None, field: str, *, end_of_day: bool = False) -> datetime | None:
    """Parse an ISO date or datetime query parameter into an aware UTC datetime.

    Date-only upper bounds cover the whole day.
    """
    if raw is None or raw == "":
        return None
    value = raw.strip()
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
        return as_utc(datetime.fromisoformat(value))
    except ValueError as exc:
        message = f'"{field}" must be in ISO 8601 date format'
        raise ValidationError(
            "Validation error",
            details={"errors": [{"field": field, "message": message}]},
        ) from exc


def _breakdown(rows: list[tuple[Any, int]]) -> dict[str, int]:
    # Largest groups first; ties broken by label so payloads are stable.
    ordered = sorted(((str(label), int(count)) for label, count in rows), key=lambda item: (-item[1], item[0]))
    return dict(ordered)


class AnalyticsService:
    def __init__(
        self,
        *,
        cache: CacheStore,
        cache_prefix: str,
        summary_ttl_s: int,
        user_stats_ttl_s: int,
        recent_limit: int,
        top_events_limit: int = 10,
    ) -> None:
        self._cache = cache
        self._cache_prefix = cache_prefix
        self._summary_ttl_s = summary_ttl_s
        self._user_stats_ttl_s = user_stats_ttl_s
        self._recent_limit = recent_limit
        self._top_events_limit = top_events_limit

    async def _cache_aside(
        self,
        key: str,
        ttl_s: int,
        compute: Callable[[], Awaitable[dict[str, Any]]],
    ) -> CachedResult:
        cached = await self._cache.get(key)
        if cached is not None:
            try:
                return CachedResult(data=json.loads(cached), cached=True)
            except ValueError:
                logger.warning("cache_entry_corrupt key=%s", key)
        data = await compute()
        await self._cache.set(key, json.dumps(data, separators=(",", ":")), ttl_s)
        return CachedResult(data=data, cached=False)

    @staticmethod
    def _scope_filters(scope: AnalyticsScope) -> list[ColumnElement[bool]]:
        filters: list[ColumnElement[bool]] = [Credential.account_id == scope.account_id]
        if scope.credential_id is not None:
            filters.append(Event.credential_id == scope.credential_id)
        return filters

    async def event_summary(
        self,
        session: AsyncSession,
        scope: AnalyticsScope,
        *,
        event: str,
        start: datetime | None = None,
        end: datetime | None = None,
        app_id: str | None = None,
    ) -> CachedResult:
        params = {
            "event": event,
            "start": isoformat(start),
            "end": isoformat(end),
            "app_id": app_id,
        }
        key = build_cache_key(self._cache_prefix, scope, KIND_SUMMARY, params, credential_filter=app_id)

        async def compute() -> dict[str, Any]:
            filters = self._scope_filters(scope)
            filters.append(Event.event_name == event)
            if app_id is not None:
                filters.append(Event.credential_id == app_id)
            if start is not None:
                filters.append(Event.occurred_at >= start)
            if end is not None:
                filters.append(Event.occurred_at <= end)
            return await self._compute_summary(session, event, filters)

        return await self._cache_aside(key, self._summary_ttl_s, compute)

    async def _compute_summary(
        self, session: AsyncSession, event: str, filters: list[ColumnElement[bool]]
    ) -> dict[str, Any]:
        def base(*columns: Any):
            return (
                select(*columns)
                .select_from(Event)
                .join(Credential, Credential.id == Event.credential_id)
                .where(*filters)
            )

        async def grouped(column: Any) -> dict[str, int]:
            result = await session.execute(
                base(column, func.count()).where(column.is_not(None)).group_by(column)
            )
            return _breakdown([tuple(row) for row in result.all()])

        try:
            totals = (
                await session.execute(
                    base(
                        func.count(),
                        func.count(func.distinct(Event.user_id)),
                        func.count(func.distinct(Event.ip_address)),
                    )
                )
            ).one()
            device_data = await grouped(Event.device)
            browser_data = await grouped(Event.browser)
            os_data = await grouped(Event.os)
        except SQLAlchemyError as exc:
            logger.exception("event_summary_failed event=%s", event)
            raise StorageError("Error retrieving event summary") from exc

        count, unique_users, unique_ips = totals
        return {
            "event": event,
            "count": int(count or 0),
            "uniqueUsers": int(unique_users or 0),
            "uniqueIps": int(unique_ips or 0),
            "deviceData": device_data,
            "browserData": browser_data,
            "osData": os_data,
        }

    async def user_stats(
        self,
        session: AsyncSession,
        scope: AnalyticsScope,
        *,
        user_id: str,
    ) -> CachedResult:
        key = build_cache_key(self._cache_prefix, scope, KIND_USER_STATS, {"user_id": user_id})

        async def compute() -> dict[str, Any]:
            filters = self._scope_filters(scope)
            filters.append(Event.user_id == user_id)
            return await self._compute_user_stats(session, user_id, filters)

        return await self._cache_aside(key, self._user_stats_ttl_s, compute)

    async def _compute_user_stats(
        self, session: AsyncSession, user_id: str, filters: list[ColumnElement[bool]]
    ) -> dict[str, Any]:
        def base(*columns: Any):
            return (
                select(*columns)
                .select_from(Event)
                .join(Credential, Credential.id == Event.credential_id)
                .where(*filters)
            )

        try:
            totals = (
                await session.execute(
                    base(
                        func.count(),
                        func.count(func.distinct(Event.event_name)),
                        func.min(Event.occurred_at),
                        func.max(Event.occurred_at),
                    )
                )
            ).one()
            total_events = int(totals[0] or 0)
            if total_events == 0:
                raise NotFound(UNKNOWN_USER_MESSAGE)
            devices = await session.execute(
                base(Event.device, func.count()).where(Event.device.is_not(None)).group_by(Event.device)
            )
            addresses = await session.execute(
                base(Event.ip_address)
                .where(Event.ip_address.is_not(None))
                .distinct()
                .order_by(Event.ip_address)
            )
            recent = await session.execute(
                base(Event.event_name, Event.occurred_at, Event.url)
                .order_by(Event.occurred_at.desc(), Event.created_at.desc(), Event.id.desc())
                .limit(self._recent_limit)
            )
        except SQLAlchemyError as exc:
            logger.exception("user_stats_failed")
            raise StorageError("Error retrieving user statistics") from exc

        return {
            "userId": user_id,
            "totalEvents": total_events,
            "uniqueEvents": int(totals[1] or 0),
            "deviceDetails": _breakdown([tuple(row) for row in devices.all()]),
            "ipAddresses": [row[0] for row in addresses.all()],
            "lastEventAt": isoformat(totals[3]),
            "firstEventAt": isoformat(totals[2]),
            "recentEvents": [
                {"event_name": name, "timestamp": isoformat(occurred_at), "url": url}
                for name, occurred_at, url in recent.all()
            ],
        }

    async def dashboard(
        self,
        session: AsyncSession,
        account_id: str,
        *,
        days: int,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        # Dashboards span a sliding day window, so they are always computed fresh.
        window = dashboard_window(now=now or utc_now(), days=days)
        return await build_dashboard(
            session=session,
            account_id=account_id,
            window=window,
            top_limit=self._top_events_limit,
        )
