from __future__ import annotations

import argparse
import asyncio
import sys

from eventlens.core.config import Settings, get_settings
from eventlens.persistence.db import build_engine, build_sessionmaker
from eventlens.services.auth.sessions import create_session, upsert_account


def _build_parser() -> argparse.ArgumentParser:
    # Stand-in for the identity-provider login: records the account and issues a bearer token.
    parser = argparse.ArgumentParser(description="Issue an account session token for the dashboard and key routes")
    parser.add_argument("--email", required=True, help="Account email")
    parser.add_argument("--external-id", default=None, help="Identity-provider subject (defaults to email)")
    parser.add_argument("--owner-name", default=None, help="Account display name")
    parser.add_argument("--ttl-hours", type=int, default=None, help="Session lifetime (defaults to SESSION_TTL_HOURS)")
    return parser


async def _create_session(args: argparse.Namespace, settings: Settings | None = None) -> int:
    resolved = settings or get_settings()
    ttl_hours = args.ttl_hours if args.ttl_hours is not None else resolved.session_ttl_hours
    if ttl_hours <= 0:
        raise ValueError("session ttl must be positive")
    engine = build_engine(resolved)
    try:
        async with build_sessionmaker(engine)() as session:
            account = await upsert_account(
                session=session,
                external_id=args.external_id or args.email,
                email=args.email,
                name=args.owner_name,
            )
            raw_token, row = await create_session(
                session=session,
                account_id=account.id,
                ttl_hours=ttl_hours,
            )
    finally:
        await engine.dispose()

    print("Session issued:")
    print(f"  account_id: {account.id}")
    print(f"  session_id: {row.id}")
    print(f"  expires_at: {row.expires_at.isoformat() if row.expires_at else 'never'}")
    print("  token (send as 'Authorization: Bearer <token>'): ")
    print(f"    {raw_token}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_session(args))
    except Exception as exc:  # noqa: BLE001 - surface session issuance failures clearly
        print(f"create_session failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
