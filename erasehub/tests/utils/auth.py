from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import update

from erasehub.domain.models import ApiKey
from erasehub.persistence.db import SessionLocal
from erasehub.services.auth.api_keys import create_api_key


async def create_test_api_key(
    *,
    subject_email: str,
    name: str = "test-key",
    key_revoked: bool = False,
) -> tuple[str, dict[str, str], str]:
    # Provision an API key for an existing tenant or subuser.
    async with SessionLocal() as session:
        api_key, raw_key = await create_api_key(session, subject_email=subject_email, name=name)
        if key_revoked:
            await session.execute(
                update(ApiKey)
                .where(ApiKey.id == api_key.id)
                .values(revoked_at=datetime.now(timezone.utc))
            )
        await session.commit()
    headers = {"Authorization": f"Bearer {raw_key}"}
    return raw_key, headers, api_key.id
