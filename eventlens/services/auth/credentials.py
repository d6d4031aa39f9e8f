from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import re
import secrets
from typing import Callable
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventlens.core.clock import utc_now
from eventlens.core.errors import NotFound, StorageError, Unauthenticated
from eventlens.domain.models import Account, Credential
from eventlens.services.background import BackgroundRunner


logger = logging.getLogger(__name__)

API_KEY_BYTES = 32
INVALID_CREDENTIAL_MESSAGE = "Invalid or expired API key."
_API_KEY_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def generate_api_key() -> str:
    # 32 random bytes rendered as 64 lowercase hex characters.
    return secrets.token_hex(API_KEY_BYTES)


def is_valid_api_key_format(raw_key: str) -> bool:
    return bool(_API_KEY_PATTERN.match(raw_key))


def generate_expiry(days: int | None, *, now: datetime | None = None) -> datetime | None:
    if days is None or days <= 0:
        return None
    return (now or utc_now()) + timedelta(days=days)


def key_prefix(raw_key: str) -> str:
    # Log-safe identifier for a secret.
    return raw_key[:8]


@dataclass(frozen=True)
class CredentialContext:
    # Identity attached to a request that presented a usable credential.
    credential_id: str
    account_id: str
    account_email: str
    app_name: str


class CredentialValidator:
    """Resolve a presented secret to the credential and its owning account.

    Missing, inactive and expired credentials all fail with the same message.
    Successful lookups schedule a best-effort ``last_used_at`` stamp on the
    background runner so the request never waits on, or fails because of, it.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        runner: BackgroundRunner,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._runner = runner
        self._clock = clock

    async def _lookup(self, session: AsyncSession, raw_key: str) -> CredentialContext | None:
        now = self._clock()
        try:
            result = await session.execute(
                select(Credential.id, Credential.app_name, Account.id, Account.email)
                .join(Account, Account.id == Credential.account_id)
                .where(
                    Credential.api_key == raw_key,
                    Credential.is_active.is_(True),
                    or_(Credential.expires_at.is_(None), Credential.expires_at > now),
                )
            )
        except SQLAlchemyError as exc:
            await session.rollback()
            raise StorageError("Failed to validate API key") from exc
        row = result.first()
        if row is None:
            return None
        credential_id, app_name, account_id, account_email = row
        return CredentialContext(
            credential_id=credential_id,
            account_id=account_id,
            account_email=account_email,
            app_name=app_name,
        )

    async def validate(self, session: AsyncSession, raw_key: str | None) -> CredentialContext:
        if not raw_key or not is_valid_api_key_format(raw_key):
            raise Unauthenticated(INVALID_CREDENTIAL_MESSAGE)
        context = await self._lookup(session, raw_key)
        if context is None:
            logger.info("credential_rejected prefix=%s", key_prefix(raw_key))
            raise Unauthenticated(INVALID_CREDENTIAL_MESSAGE)
        self._runner.spawn(
            self.touch_last_used(context.credential_id),
            name=f"credential_touch:{context.credential_id}",
        )
        return context

    async def validate_optional(
        self, session: AsyncSession, raw_key: str | None
    ) -> CredentialContext | None:
        # Pass through without identity when the header is absent or unusable.
        if not raw_key:
            return None
        try:
            return await self.validate(session, raw_key)
        except Unauthenticated:
            return None

    async def touch_last_used(self, credential_id: str) -> None:
        # Own session so the stamp never joins the request transaction.
        async with self._session_factory() as session:
            try:
                await session.execute(
                    update(Credential)
                    .where(Credential.id == credential_id)
                    .values(last_used_at=self._clock())
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("credential_touch_failed credential_id=%s", credential_id, exc_info=exc)


async def register_credential(
    *,
    session: AsyncSession,
    account_id: str,
    app_name: str,
    app_domain: str | None,
    expiry_days: int | None,
) -> Credential:
    now = utc_now()
    row = Credential(
        id=str(uuid4()),
        account_id=account_id,
        app_name=app_name,
        app_domain=app_domain,
        api_key=generate_api_key(),
        is_active=True,
        expires_at=generate_expiry(expiry_days, now=now),
        created_at=now,
        revoked_at=None,
        last_used_at=None,
    )
    session.add(row)
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StorageError("Failed to register application") from exc
    logger.info(
        "credential_registered credential_id=%s account_id=%s prefix=%s",
        row.id,
        account_id,
        key_prefix(row.api_key),
    )
    return row


async def list_credentials(*, session: AsyncSession, account_id: str) -> list[Credential]:
    try:
        result = await session.execute(
            select(Credential)
            .where(Credential.account_id == account_id)
            .order_by(Credential.created_at.desc(), Credential.id.desc())
        )
    except SQLAlchemyError as exc:
        raise StorageError("Failed to list API keys") from exc
    return list(result.scalars().all())


async def get_credential(*, session: AsyncSession, account_id: str, credential_id: str) -> Credential:
    # Another account's credential reads exactly like a missing one.
    try:
        result = await session.execute(
            select(Credential).where(
                Credential.id == credential_id,
                Credential.account_id == account_id,
            )
        )
    except SQLAlchemyError as exc:
        raise StorageError("Failed to load API key") from exc
    row = result.scalar_one_or_none()
    if row is None:
        raise NotFound("API key not found")
    return row


async def revoke_credential(*, session: AsyncSession, account_id: str, credential_id: str) -> Credential:
    # Revocation keeps the secret so historical events stay attributable.
    row = await get_credential(session=session, account_id=account_id, credential_id=credential_id)
    row.is_active = False
    row.revoked_at = utc_now()
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StorageError("Failed to revoke API key") from exc
    logger.info("credential_revoked credential_id=%s account_id=%s", row.id, account_id)
    return row


async def regenerate_credential(
    *,
    session: AsyncSession,
    account_id: str,
    credential_id: str,
    expiry_days: int | None,
) -> Credential:
    # New secret on the same row; events recorded under the old secret stay attached.
    row = await get_credential(session=session, account_id=account_id, credential_id=credential_id)
    row.api_key = generate_api_key()
    row.expires_at = generate_expiry(expiry_days)
    row.is_active = True
    row.revoked_at = None
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StorageError("Failed to regenerate API key") from exc
    logger.info(
        "credential_regenerated credential_id=%s account_id=%s prefix=%s",
        row.id,
        account_id,
        key_prefix(row.api_key),
    )
    return row
