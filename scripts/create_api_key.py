from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy import select

from erasehub.domain.models import Subuser, User
from erasehub.persistence.db import SessionLocal
from erasehub.services.auth.api_keys import create_api_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an API key for a tenant or subuser")
    parser.add_argument("--email", required=True, help="Tenant or subuser email the key acts as")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        # Keys may only be issued to identities that already exist.
        tenant = await session.execute(select(User.user_id).where(User.user_email == args.email))
        subuser = await session.execute(
            select(Subuser.subuser_id).where(Subuser.subuser_email == args.email)
        )
        if tenant.scalar_one_or_none() is None and subuser.scalar_one_or_none() is None:
            raise ValueError(f"No tenant or subuser with email {args.email}")
        api_key, raw_key = await create_api_key(session, subject_email=args.email, name=args.name)
        await session.commit()

    print("API key created:")
    print(f"  key_id: {api_key.id}")
    print(f"  key_prefix: {api_key.key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
