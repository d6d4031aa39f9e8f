from __future__ import annotations

import argparse
import asyncio
import sys

from eventlens.core.config import Settings, get_settings
from eventlens.persistence.db import build_engine, build_sessionmaker
from eventlens.services.auth.credentials import register_credential
from eventlens.services.auth.sessions import upsert_account


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit so keys are only issued to a named account.
    parser = argparse.ArgumentParser(description="Register an application and issue its API key")
    parser.add_argument("--email", required=True, help="Owning account email")
    parser.add_argument("--external-id", default=None, help="Identity-provider subject (defaults to email)")
    parser.add_argument("--owner-name", default=None, help="Owning account display name")
    parser.add_argument("--app-name", required=True, help="Application name (3-255 chars)")
    parser.add_argument("--app-domain", default=None, help="Optional application URI")
    return parser


async def _register(args: argparse.Namespace, settings: Settings | None = None) -> int:
    resolved = settings or get_settings()
    if not 3 <= len(args.app_name) <= 255:
        raise ValueError("app name must be between 3 and 255 characters")
    engine = build_engine(resolved)
    try:
        async with build_sessionmaker(engine)() as session:
            account = await upsert_account(
                session=session,
                external_id=args.external_id or args.email,
                email=args.email,
                name=args.owner_name,
            )
            row = await register_credential(
                session=session,
                account_id=account.id,
                app_name=args.app_name,
                app_domain=args.app_domain,
                expiry_days=resolved.api_key_expiry_days,
            )
    finally:
        await engine.dispose()

    print("Application registered:")
    print(f"  credential_id: {row.id}")
    print(f"  account_id: {account.id}")
    print(f"  expires_at: {row.expires_at.isoformat() if row.expires_at else 'never'}")
    print("  api_key: ")
    print(f"    {row.api_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_register(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"register_app failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
