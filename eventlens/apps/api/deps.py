from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from eventlens.apps.api.state import AppResources
from eventlens.core.errors import Unauthenticated
from eventlens.persistence.db import session_scope
from eventlens.services.aggregation import AnalyticsScope
from eventlens.services.auth.credentials import CredentialContext
from eventlens.services.auth.sessions import AccountIdentity, parse_bearer_token, resolve_session
from eventlens.services.enrichment import ClientContext, build_client_context


def get_resources(request: Request) -> AppResources:
    return request.app.state.resources


async def get_db(resources: AppResources = Depends(get_resources)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with session_scope(resources.session_factory) as session:
        yield session


def get_client_context(request: Request) -> ClientContext:
    return build_client_context(request.headers, request.client.host if request.client else None)


async def require_credential(
    request: Request,
    resources: AppResources = Depends(get_resources),
    db: AsyncSession = Depends(get_db),
) -> CredentialContext:
    raw_key = request.headers.get(resources.settings.auth_api_key_header)
    return await resources.validator.validate(db, raw_key)


async def optional_credential(
    request: Request,
    resources: AppResources = Depends(get_resources),
    db: AsyncSession = Depends(get_db),
) -> CredentialContext | None:
    raw_key = request.headers.get(resources.settings.auth_api_key_header)
    return await resources.validator.validate_optional(db, raw_key)


async def optional_account(
    request: Request,
    resources: AppResources = Depends(get_resources),
    db: AsyncSession = Depends(get_db),
) -> AccountIdentity | None:
    raw_token = parse_bearer_token(request.headers.get(resources.settings.auth_session_header))
    if raw_token is None:
        return None
    try:
        return await resolve_session(session=db, raw_token=raw_token)
    except Unauthenticated:
        return None


async def require_account(
    account: AccountIdentity | None = Depends(optional_account),
) -> AccountIdentity:
    if account is None:
        raise Unauthenticated()
    return account


async def get_query_scope(
    account: AccountIdentity | None = Depends(optional_account),
    credential: CredentialContext | None = Depends(optional_credential),
) -> AnalyticsScope:
    # Sessions see the whole account; a bare credential sees only its own events.
    if account is not None:
        return AnalyticsScope(account_id=account.account_id)
    if credential is not None:
        return AnalyticsScope(account_id=credential.account_id, credential_id=credential.credential_id)
    raise Unauthenticated()
