from __future__ import annotations

import argparse
import asyncio
import sys

from eventlens.core.config import Settings, get_settings
from eventlens.persistence.db import build_engine, create_all


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create eventlens tables from the ORM metadata")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    return parser


async def _init_db(args: argparse.Namespace, settings: Settings | None = None) -> int:
    resolved = settings or get_settings()
    if args.database_url:
        resolved = resolved.model_copy(update={"database_url": args.database_url})
    engine = build_engine(resolved)
    try:
        await create_all(engine)
    finally:
        await engine.dispose()
    print("Tables created")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_init_db(args))
    except Exception as exc:  # noqa: BLE001 - surface schema bootstrap failures clearly
        print(f"init_db failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
