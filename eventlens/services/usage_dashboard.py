from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from eventlens.core.errors import StorageError
from eventlens.domain.models import Credential, Event


logger = logging.getLogger(__name__)

MIN_DAYS = 1
MAX_DAYS = 365
DEFAULT_DAYS = 7


@dataclass(frozen=True)
class DashboardWindow:
    # Whole UTC days ending today, so the series has exactly `days` points.
    start_date: date
    days: int

    @property
    def since(self) -> datetime:
        return datetime.combine(self.start_date, time.min, tzinfo=timezone.utc)


def dashboard_window(*, now: datetime, days: int) -> DashboardWindow:
    today = now.astimezone(timezone.utc).date()
    return DashboardWindow(start_date=today - timedelta(days=days - 1), days=days)


def utc_day(column: Any, dialect_name: str) -> Any:
    # Postgres date() follows the session TimeZone; SQLite values are already UTC text.
    if dialect_name == "postgresql":
        return func.date(func.timezone("UTC", column))
    return func.date(column)


def _as_date(value: Any) -> date:
    # Postgres returns DATE values; SQLite returns ISO strings.
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def build_timeseries_points(
    *,
    start_date: date,
    days: int,
    counts_by_date: dict[date, int],
) -> list[dict[str, Any]]:
    # Fill missing dates so chart consumers receive contiguous series points.
    points: list[dict[str, Any]] = []
    for offset in range(days):
        current = start_date + timedelta(days=offset)
        points.append({"date": current.isoformat(), "count": int(counts_by_date.get(current, 0))})
    return points


async def build_dashboard(
    *,
    session: AsyncSession,
    account_id: str,
    window: DashboardWindow,
    top_limit: int,
) -> dict[str, Any]:
    """Account overview: totals over active applications, top events and a daily series."""
    since = window.since
    event_day = utc_day(Event.occurred_at, session.get_bind().dialect.name)
    try:
        summary_row = (
            await session.execute(
                select(
                    func.count(func.distinct(Credential.id)),
                    func.count(func.distinct(Event.id)),
                    func.count(func.distinct(Event.user_id)),
                    func.count(func.distinct(event_day)),
                )
                .select_from(Credential)
                .outerjoin(
                    Event,
                    (Event.credential_id == Credential.id) & (Event.occurred_at >= since),
                )
                .where(Credential.account_id == account_id, Credential.is_active.is_(True))
            )
        ).one()

        account_events = (
            select(Event.event_name)
            .join(Credential, Credential.id == Event.credential_id)
            .where(Credential.account_id == account_id, Event.occurred_at >= since)
        )
        event_count = func.count().label("count")
        top_rows = (
            await session.execute(
                account_events.with_only_columns(Event.event_name, event_count)
                .group_by(Event.event_name)
                .order_by(event_count.desc(), Event.event_name)
                .limit(top_limit)
            )
        ).all()
        day_rows = (
            await session.execute(
                account_events.with_only_columns(event_day, func.count()).group_by(event_day)
            )
        ).all()
    except SQLAlchemyError as exc:
        logger.exception("dashboard_failed account_id=%s", account_id)
        raise StorageError("Error retrieving dashboard data") from exc

    total_apps, total_events, unique_users, active_days = summary_row
    counts_by_date = {_as_date(day): int(count) for day, count in day_rows if day is not None}
    return {
        "summary": {
            "total_apps": int(total_apps or 0),
            "total_events": int(total_events or 0),
            "unique_users": int(unique_users or 0),
            "active_days": int(active_days or 0),
        },
        "topEvents": [{"event_name": name, "count": int(count)} for name, count in top_rows],
        "timeSeries": build_timeseries_points(
            start_date=window.start_date,
            days=window.days,
            counts_by_date=counts_by_date,
        ),
    }
