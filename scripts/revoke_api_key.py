from __future__ import annotations

import argparse
import asyncio
import sys

from eventlens.core.config import Settings, get_settings
from eventlens.domain.models import Credential
from eventlens.persistence.db import build_engine, build_sessionmaker
from eventlens.services.auth.credentials import revoke_credential


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI usage minimal to avoid revoking the wrong key.
    parser = argparse.ArgumentParser(description="Revoke an API key by credential id")
    parser.add_argument("credential_id", help="Credential id to revoke")
    return parser


async def _revoke_key(credential_id: str, settings: Settings | None = None) -> int:
    # Mark the key inactive without deleting its events.
    engine = build_engine(settings or get_settings())
    try:
        async with build_sessionmaker(engine)() as session:
            existing = await session.get(Credential, credential_id)
            if existing is None:
                raise ValueError("API key not found")
            row = await revoke_credential(
                session=session,
                account_id=existing.account_id,
                credential_id=credential_id,
            )
    finally:
        await engine.dispose()
    print(f"Revoked API key {row.id} ({row.app_name})")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args.credential_id))
    except Exception as exc:  # noqa: BLE001 - surface revocation failures clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
