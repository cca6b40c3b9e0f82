from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from erasehub.core.config import get_settings
from erasehub.domain.models import ApiKey, Subuser, User
from erasehub.persistence.db import SessionLocal, get_session
from erasehub.services.auth.api_keys import hash_api_key
from erasehub.services.private_cloud.routing import TenantContextResolver, open_store
from erasehub.services.private_cloud.service import PrivateCloudService


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated identity; subusers carry their owning tenant in tenant_email.
    subject_email: str
    tenant_email: str
    is_subuser: bool = False
    api_key_id: str
    auth_method: str = "api_key"


_auth_cache: dict[str, tuple[float, Principal]] = {}
_auth_cache_lock = asyncio.Lock()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _get_cached_principal(key_hash: str, ttl_s: int) -> Principal | None:
    if ttl_s <= 0:
        return None
    now = time.time()
    async with _auth_cache_lock:
        entry = _auth_cache.get(key_hash)
        if not entry:
            return None
        expires_at, principal = entry
        if expires_at <= now:
            _auth_cache.pop(key_hash, None)
            return None
        return principal


async def _set_cached_principal(key_hash: str, principal: Principal, ttl_s: int) -> None:
    # Fixed expiry keeps revocations responsive.
    if ttl_s <= 0:
        return
    async with _auth_cache_lock:
        _auth_cache[key_hash] = (time.time() + ttl_s, principal)


def clear_auth_cache() -> None:
    _auth_cache.clear()


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def _resolve_subject(
    db: AsyncSession, subject_email: str, *, api_key_id: str, auth_method: str
) -> Principal | None:
    # Tenants sign in as themselves; subusers act inside their owner's tenant.
    user = await db.execute(select(User.user_email).where(User.user_email == subject_email))
    if user.scalar_one_or_none() is not None:
        return Principal(
            subject_email=subject_email,
            tenant_email=subject_email,
            api_key_id=api_key_id,
            auth_method=auth_method,
        )
    owner = await db.execute(select(Subuser.user_email).where(Subuser.subuser_email == subject_email))
    owner_email = owner.scalar_one_or_none()
    if owner_email is None:
        return None
    return Principal(
        subject_email=subject_email,
        tenant_email=owner_email,
        is_subuser=True,
        api_key_id=api_key_id,
        auth_method=auth_method,
    )


async def _principal_from_dev_headers(request: Request, db: AsyncSession) -> Principal:
    subject_email = request.headers.get("X-Tenant-Email")
    if not subject_email:
        raise _auth_error("X-Tenant-Email header is required in dev bypass mode")
    principal = await _resolve_subject(
        db, subject_email.strip(), api_key_id="dev-bypass", auth_method="dev_bypass"
    )
    if principal is None:
        raise _auth_error("Unknown tenant")
    return principal


async def _touch_last_used(api_key_id: str) -> None:
    # Separate session so the request transaction is never affected.
    async with SessionLocal() as session:
        try:
            await session.execute(
                update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=func.now())
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.warning("api_key_touch_failed api_key_id=%s", api_key_id)


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))

    if not settings.auth_enabled or not bearer_token:
        if settings.auth_dev_bypass:
            return await _principal_from_dev_headers(request, db)
        if not settings.auth_enabled:
            raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        raise _auth_error("Missing API key")

    key_hash = hash_api_key(bearer_token)
    cached = await _get_cached_principal(key_hash, settings.auth_cache_ttl_s)
    if cached:
        return cached

    try:
        result = await db.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc
    api_key = result.scalar_one_or_none()
    if api_key is None:
        raise _auth_error("Invalid API key")
    if api_key.revoked_at is not None:
        raise _auth_error("API key is revoked")

    principal = await _resolve_subject(
        db, api_key.subject_email, api_key_id=api_key.id, auth_method="api_key"
    )
    if principal is None:
        raise _auth_error("API key subject no longer exists")
    await _set_cached_principal(key_hash, principal, settings.auth_cache_ttl_s)
    api_key_id = api_key.id
    # End the read transaction first; on SQLite a stale snapshot cannot write after the touch commits.
    await db.rollback()
    await _touch_last_used(api_key_id)
    return principal


async def get_private_cloud_service(db: AsyncSession = Depends(get_db)) -> PrivateCloudService:
    return PrivateCloudService(db)


async def get_routed_db(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> AsyncGenerator[AsyncSession, None]:
    """Session bound to the store that holds the caller's data for this request."""
    resolver = TenantContextResolver(db)
    decision = await resolver.resolve_routing_mode(principal)
    async with open_store(decision, shared_session=db) as session:
        yield session
