from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from eventlens.apps.api.deps import (
    get_client_context,
    get_db,
    get_query_scope,
    get_resources,
    require_account,
    require_credential,
)
from eventlens.apps.api.openapi import AUTH_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES, NOT_FOUND_RESPONSES
from eventlens.apps.api.rate_limit import SCOPE_GLOBAL, SCOPE_INGEST, SCOPE_QUERY, rate_limit
from eventlens.apps.api.response import SuccessEnvelope, success_response
from eventlens.apps.api.state import AppResources
from eventlens.core.clock import isoformat
from eventlens.services.aggregation import AnalyticsScope, parse_date_bound
from eventlens.services.auth.credentials import CredentialContext
from eventlens.services.auth.sessions import AccountIdentity
from eventlens.services.enrichment import ClientContext
from eventlens.services.ingest import EventInput
from eventlens.services.usage_dashboard import DEFAULT_DAYS, MAX_DAYS, MIN_DAYS


router = APIRouter(
    prefix="/api/analytics",
    tags=["analytics"],
    responses={**DEFAULT_ERROR_RESPONSES, **AUTH_ERROR_RESPONSES},
    dependencies=[Depends(rate_limit(SCOPE_GLOBAL))],
)


class EventReceiptResponse(BaseModel):
    id: str
    created_at: str


class EventSummaryResponse(BaseModel):
    event: str
    count: int
    uniqueUsers: int
    uniqueIps: int
    deviceData: dict[str, int]
    browserData: dict[str, int]
    osData: dict[str, int]


class RecentEvent(BaseModel):
    event_name: str
    timestamp: str | None
    url: str | None


class UserStatsResponse(BaseModel):
    userId: str
    totalEvents: int
    uniqueEvents: int
    deviceDetails: dict[str, int]
    ipAddresses: list[str]
    lastEventAt: str | None
    firstEventAt: str | None
    recentEvents: list[RecentEvent]


@router.post(
    "/collect",
    status_code=201,
    response_model=SuccessEnvelope[EventReceiptResponse],
    response_model_exclude_unset=True,
    dependencies=[Depends(rate_limit(SCOPE_INGEST))],
)
async def collect_event(
    payload: EventInput,
    credential: CredentialContext = Depends(require_credential),
    client: ClientContext = Depends(get_client_context),
    resources: AppResources = Depends(get_resources),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    receipt = await resources.writer.write(
        session=db,
        credential=credential,
        client=client,
        payload=payload,
    )
    return success_response(
        message="Event collected successfully",
        data={"id": receipt.id, "created_at": isoformat(receipt.created_at)},
    )


@router.get(
    "/event-summary",
    response_model=SuccessEnvelope[EventSummaryResponse],
    response_model_exclude_unset=True,
    dependencies=[Depends(rate_limit(SCOPE_QUERY))],
)
async def event_summary(
    event: str = Query(min_length=1, max_length=255),
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    app_id: UUID | None = Query(default=None),
    scope: AnalyticsScope = Depends(get_query_scope),
    resources: AppResources = Depends(get_resources),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await resources.analytics.event_summary(
        db,
        scope,
        event=event,
        start=parse_date_bound(start_date, "startDate"),
        end=parse_date_bound(end_date, "endDate", end_of_day=True),
        app_id=str(app_id) if app_id is not None else None,
    )
    return success_response(data=result.data, cached=result.cached)


@router.get(
    "/user-stats",
    response_model=SuccessEnvelope[UserStatsResponse],
    response_model_exclude_unset=True,
    responses=NOT_FOUND_RESPONSES,
    dependencies=[Depends(rate_limit(SCOPE_QUERY))],
)
async def user_stats(
    user_id: str = Query(alias="userId", min_length=1, max_length=255),
    scope: AnalyticsScope = Depends(get_query_scope),
    resources: AppResources = Depends(get_resources),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await resources.analytics.user_stats(db, scope, user_id=user_id)
    return success_response(data=result.data, cached=result.cached)


@router.get("/dashboard", dependencies=[Depends(rate_limit(SCOPE_QUERY))])
async def dashboard(
    days: int = Query(default=DEFAULT_DAYS, ge=MIN_DAYS, le=MAX_DAYS),
    account: AccountIdentity = Depends(require_account),
    resources: AppResources = Depends(get_resources),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    data = await resources.analytics.dashboard(db, account.account_id, days=days)
    return success_response(data=data)
