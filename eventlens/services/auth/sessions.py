from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
import secrets
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from eventlens.core.clock import utc_now
from eventlens.core.errors import StorageError, Unauthenticated
from eventlens.domain.models import Account, AccountSession


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "els_"
INVALID_SESSION_MESSAGE = "Invalid or expired session."


@dataclass(frozen=True)
class AccountIdentity:
    # Identity supplied by a resolved login session.
    account_id: str
    email: str
    name: str | None
    avatar_url: str | None
    session_id: str


def is_session_token(raw_token: str) -> bool:
    return raw_token.startswith(TOKEN_PREFIX)


def hash_session_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_session_token() -> tuple[str, str, str, str]:
    # Embed a short id prefix to support operational tracing without plaintext tokens.
    token_id = uuid4().hex
    raw_token = f"{TOKEN_PREFIX}{token_id}_{secrets.token_urlsafe(32)}"
    return token_id, raw_token, raw_token[:12], hash_session_token(raw_token)


def parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def upsert_account(
    *,
    session: AsyncSession,
    external_id: str,
    email: str,
    name: str | None = None,
    avatar_url: str | None = None,
) -> Account:
    """Create the account on first login, refresh its profile on later ones."""
    now = utc_now()
    try:
        result = await session.execute(select(Account).where(Account.external_id == external_id))
        account = result.scalar_one_or_none()
        if account is None:
            account = Account(
                id=str(uuid4()),
                external_id=external_id,
                email=email,
                name=name,
                avatar_url=avatar_url,
                created_at=now,
                updated_at=now,
            )
            session.add(account)
            logger.info("account_created account_id=%s", account.id)
        else:
            account.email = email
            account.name = name
            account.avatar_url = avatar_url
            account.updated_at = now
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StorageError("Failed to record account") from exc
    return account


async def create_session(
    *,
    session: AsyncSession,
    account_id: str,
    ttl_hours: int | None,
) -> tuple[str, AccountSession]:
    # Persist a hashed session token; the raw token is only returned once.
    token_id, raw_token, token_prefix, token_hash = generate_session_token()
    now = utc_now()
    row = AccountSession(
        id=token_id,
        account_id=account_id,
        token_prefix=token_prefix,
        token_hash=token_hash,
        created_at=now,
        last_seen_at=None,
        expires_at=None if ttl_hours is None else now + timedelta(hours=ttl_hours),
        revoked_at=None,
    )
    session.add(row)
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StorageError("Failed to create session") from exc
    return raw_token, row


async def resolve_session(
    *,
    session: AsyncSession,
    raw_token: str,
    now: datetime | None = None,
) -> AccountIdentity:
    if not is_session_token(raw_token):
        raise Unauthenticated(INVALID_SESSION_MESSAGE)
    resolved_now = now or utc_now()
    try:
        result = await session.execute(
            select(AccountSession.id, Account)
            .join(Account, Account.id == AccountSession.account_id)
            .where(
                AccountSession.token_hash == hash_session_token(raw_token),
                AccountSession.revoked_at.is_(None),
                or_(AccountSession.expires_at.is_(None), AccountSession.expires_at > resolved_now),
            )
        )
        row = result.first()
        if row is None:
            raise Unauthenticated(INVALID_SESSION_MESSAGE)
        session_id, account = row
        await session.execute(
            update(AccountSession)
            .where(AccountSession.id == session_id)
            .values(last_seen_at=resolved_now)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StorageError("Failed to resolve session") from exc
    return AccountIdentity(
        account_id=account.id,
        email=account.email,
        name=account.name,
        avatar_url=account.avatar_url,
        session_id=session_id,
    )


async def revoke_session(*, session: AsyncSession, session_id: str) -> None:
    try:
        await session.execute(
            update(AccountSession)
            .where(AccountSession.id == session_id, AccountSession.revoked_at.is_(None))
            .values(revoked_at=utc_now())
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StorageError("Failed to revoke session") from exc
    logger.info("session_revoked session_id=%s", session_id)
