from __future__ import annotations

import hashlib
import secrets
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from erasehub.domain.models import ApiKey


API_KEY_PREFIX = "ehk"


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Embed the key id in the token so operators can trace secrets safely.
    resolved_id = key_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_key = f"{API_KEY_PREFIX}_{resolved_id}_{secret}"
    key_prefix = raw_key[:12]
    return resolved_id, raw_key, key_prefix, hash_api_key(raw_key)


async def create_api_key(
    session: AsyncSession, *, subject_email: str, name: str | None = None
) -> tuple[ApiKey, str]:
    """Persist a new key for a tenant or subuser and return it with the raw secret.

    The raw key is only available here; callers must hand it over once and drop it.
    """
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    api_key = ApiKey(
        id=key_id,
        subject_email=subject_email,
        key_prefix=key_prefix,
        key_hash=key_hash,
        name=name,
    )
    session.add(api_key)
    await session.flush()
    return api_key, raw_key
