from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from eventlens.apps.api.deps import get_db, get_resources, require_account
from eventlens.apps.api.openapi import AUTH_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES, NOT_FOUND_RESPONSES
from eventlens.apps.api.rate_limit import SCOPE_AUTH, SCOPE_GLOBAL, rate_limit
from eventlens.apps.api.response import success_response
from eventlens.apps.api.state import AppResources
from eventlens.core.clock import isoformat
from eventlens.domain.models import Credential
from eventlens.services.auth.credentials import (
    get_credential,
    list_credentials,
    regenerate_credential,
    register_credential,
    revoke_credential,
)
from eventlens.services.auth.sessions import AccountIdentity, revoke_session


router = APIRouter(
    prefix="/api/auth",
    tags=["auth"],
    responses={**DEFAULT_ERROR_RESPONSES, **AUTH_ERROR_RESPONSES},
    dependencies=[Depends(rate_limit(SCOPE_GLOBAL)), Depends(rate_limit(SCOPE_AUTH))],
)


class RegisterAppRequest(BaseModel):
    app_name: str = Field(min_length=3, max_length=255)
    app_domain: str | None = None

    @field_validator("app_domain")
    @classmethod
    def _validate_domain(cls, value: str | None) -> str | None:
        if value is None:
            return None
        parts = urlsplit(value)
        if not parts.scheme or not parts.netloc:
            raise ValueError("must be a valid uri")
        return value


def _credential_payload(row: Credential) -> dict[str, Any]:
    return {
        "id": row.id,
        "app_name": row.app_name,
        "app_domain": row.app_domain,
        "api_key": row.api_key,
        "is_active": row.is_active,
        "expires_at": isoformat(row.expires_at),
        "created_at": isoformat(row.created_at),
        "last_used_at": isoformat(row.last_used_at),
        "revoked_at": isoformat(row.revoked_at),
    }


@router.get("/me")
async def me(account: AccountIdentity = Depends(require_account)) -> dict[str, Any]:
    return success_response(
        data={
            "id": account.account_id,
            "email": account.email,
            "name": account.name,
            "profile_picture": account.avatar_url,
        }
    )


@router.post("/logout")
async def logout(
    account: AccountIdentity = Depends(require_account),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await revoke_session(session=db, session_id=account.session_id)
    return {"success": True, "message": "Logged out successfully"}


@router.post("/register", status_code=201)
async def register_app(
    payload: RegisterAppRequest,
    account: AccountIdentity = Depends(require_account),
    resources: AppResources = Depends(get_resources),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await register_credential(
        session=db,
        account_id=account.account_id,
        app_name=payload.app_name,
        app_domain=payload.app_domain,
        expiry_days=resources.settings.api_key_expiry_days,
    )
    return success_response(message="API key generated successfully", data=_credential_payload(row))


@router.get("/api-keys")
async def api_keys(
    account: AccountIdentity = Depends(require_account),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await list_credentials(session=db, account_id=account.account_id)
    return success_response(data=[_credential_payload(row) for row in rows])


@router.get("/api-keys/{credential_id}", responses=NOT_FOUND_RESPONSES)
async def api_key(
    credential_id: str,
    account: AccountIdentity = Depends(require_account),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await get_credential(session=db, account_id=account.account_id, credential_id=credential_id)
    return success_response(data=_credential_payload(row))


@router.post("/api-keys/{credential_id}/revoke", responses=NOT_FOUND_RESPONSES)
async def revoke_api_key(
    credential_id: str,
    account: AccountIdentity = Depends(require_account),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await revoke_credential(session=db, account_id=account.account_id, credential_id=credential_id)
    return success_response(
        message="API key revoked successfully",
        data={"id": row.id, "app_name": row.app_name, "revoked_at": isoformat(row.revoked_at)},
    )


@router.post("/api-keys/{credential_id}/regenerate", responses=NOT_FOUND_RESPONSES)
async def regenerate_api_key(
    credential_id: str,
    account: AccountIdentity = Depends(require_account),
    resources: AppResources = Depends(get_resources),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await regenerate_credential(
        session=db,
        account_id=account.account_id,
        credential_id=credential_id,
        expiry_days=resources.settings.api_key_expiry_days,
    )
    return success_response(message="API key regenerated successfully", data=_credential_payload(row))
