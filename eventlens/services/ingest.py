from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import ipaddress
import logging
from typing import Any, Literal
from urllib.parse import urlsplit
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from eventlens.core.clock import as_utc, utc_now
from eventlens.core.errors import StorageError
from eventlens.domain.models import Event
from eventlens.services.aggregation import invalidation_prefixes
from eventlens.services.auth.credentials import CredentialContext
from eventlens.services.background import BackgroundRunner
from eventlens.services.cache import CacheStore
from eventlens.services.enrichment import ClientContext


logger = logging.getLogger(__name__)


def _require_absolute_uri(value: str | None) -> str | None:
    if value is None:
        return None
    parts = urlsplit(value)
    if not parts.scheme or not (parts.netloc or parts.path):
        raise ValueError("must be a valid uri")
    return value


class EventInput(BaseModel):
    # Unknown fields are dropped rather than rejected.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event: str = Field(min_length=1, max_length=255)
    url: str | None = None
    referrer: str | None = None
    device: Literal["mobile", "tablet", "desktop"] | None = None
    ip_address: str | None = Field(default=None, alias="ipAddress")
    timestamp: datetime | None = None
    metadata: dict[str, Any] | None = None
    user_id: str | None = Field(default=None, max_length=255)

    @field_validator("url", "referrer")
    @classmethod
    def _validate_uri(cls, value: str | None) -> str | None:
        return _require_absolute_uri(value)

    @field_validator("ip_address")
    @classmethod
    def _validate_ip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            ipaddress.ip_address(value)
        except ValueError as exc:
            raise ValueError("must be a valid ip address") from exc
        return value


@dataclass(frozen=True)
class EventReceipt:
    id: str
    created_at: datetime


class EventWriter:
    """Persist one enriched event and retire the aggregates it makes stale.

    Invalidation runs on the background runner after the insert commits and
    is never awaited by the caller; a failed invalidation leaves entries to
    expire on their TTL.
    """

    def __init__(self, *, cache: CacheStore, runner: BackgroundRunner, cache_prefix: str) -> None:
        self._cache = cache
        self._runner = runner
        self._cache_prefix = cache_prefix

    async def write(
        self,
        *,
        session: AsyncSession,
        credential: CredentialContext,
        client: ClientContext,
        payload: EventInput,
    ) -> EventReceipt:
        now = utc_now()
        metadata = dict(payload.metadata or {})
        screen_size = metadata.get("screenSize")
        # The raw signature is always recorded alongside caller metadata.
        metadata["userAgent"] = client.user_agent
        row = Event(
            id=str(uuid4()),
            credential_id=credential.credential_id,
            event_name=payload.event,
            url=payload.url,
            referrer=payload.referrer,
            # Client-supplied device and address win over derived values.
            device=payload.device or client.device,
            ip_address=payload.ip_address or client.ip_address,
            user_agent=client.user_agent,
            browser=client.browser,
            os=client.os,
            screen_size=str(screen_size) if screen_size is not None else None,
            user_id=payload.user_id,
            metadata_json=metadata,
            occurred_at=as_utc(payload.timestamp) or now,
            created_at=now,
        )
        session.add(row)
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.exception(
                "event_write_failed credential_id=%s event=%s",
                credential.credential_id,
                payload.event,
            )
            raise StorageError("Error collecting event") from exc

        logger.info(
            "event_collected event_id=%s event=%s credential_id=%s",
            row.id,
            row.event_name,
            credential.credential_id,
        )
        self._runner.spawn(
            self.invalidate(credential),
            name=f"cache_invalidate:{credential.credential_id}",
        )
        return EventReceipt(id=row.id, created_at=now)

    async def invalidate(self, credential: CredentialContext) -> int:
        removed = 0
        for prefix in invalidation_prefixes(
            self._cache_prefix, credential.account_id, credential.credential_id
        ):
            removed += await self._cache.delete_prefix(prefix)
        logger.debug(
            "cache_invalidated credential_id=%s removed=%s", credential.credential_id, removed
        )
        return removed
