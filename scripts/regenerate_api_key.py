from __future__ import annotations

import argparse
import asyncio
import sys

from eventlens.core.config import Settings, get_settings
from eventlens.domain.models import Credential
from eventlens.persistence.db import build_engine, build_sessionmaker
from eventlens.services.auth.credentials import regenerate_credential


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue a new secret for an existing API key")
    parser.add_argument("credential_id", help="Credential id to regenerate")
    return parser


async def _regenerate_key(credential_id: str, settings: Settings | None = None) -> int:
    # The old secret stops working immediately; events stay attached to the credential.
    resolved = settings or get_settings()
    engine = build_engine(resolved)
    try:
        async with build_sessionmaker(engine)() as session:
            existing = await session.get(Credential, credential_id)
            if existing is None:
                raise ValueError("API key not found")
            row = await regenerate_credential(
                session=session,
                account_id=existing.account_id,
                credential_id=credential_id,
                expiry_days=resolved.api_key_expiry_days,
            )
    finally:
        await engine.dispose()
    print("API key regenerated:")
    print(f"  credential_id: {row.id}")
    print(f"  expires_at: {row.expires_at.isoformat() if row.expires_at else 'never'}")
    print("  api_key: ")
    print(f"    {row.api_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_regenerate_key(args.credential_id))
    except Exception as exc:  # noqa: BLE001 - surface rotation failures clearly
        print(f"regenerate_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
