from __future__ import annotations

import argparse
import asyncio
import json
import sys

from erasehub.core.errors import ErasehubError
from erasehub.core.logging import configure_logging
from erasehub.persistence.db import SessionLocal
from erasehub.services.private_cloud.routing import dispose_private_engines
from erasehub.services.private_cloud.service import PrivateCloudService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Copy a tenant's data into its private store")
    parser.add_argument("--email", required=True, help="Tenant email")
    parser.add_argument(
        "--scope",
        choices=("all", "primary"),
        default="all",
        help="all: every table; primary: users, subusers, machines and audit reports",
    )
    return parser


async def _migrate(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        service = PrivateCloudService(session)
        try:
            if args.scope == "primary":
                report = await service.migrate_primary_tables(args.email)
            else:
                report = await service.migrate_all_tables(args.email)
        finally:
            await dispose_private_engines()
    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 0 if report.status == "completed" else 2


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_migrate(args))
    except ErasehubError as exc:
        print(f"migrate_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
