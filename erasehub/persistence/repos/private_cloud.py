from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from erasehub.core.errors import (
    ConfigNotFoundError,
    ConfigurationError,
    FeatureNotEnabledError,
    TenantNotFoundError,
)
from erasehub.domain.models import PrivateCloudDatabase, Subuser, User
from erasehub.domain.private_cloud import (
    ConfigStatus,
    EntityKind,
    PrivateStoreConfig,
    StoreKind,
    TenantCapability,
    ordered_kinds,
    parse_selected_tables,
)
from erasehub.services.private_cloud.descriptors import (
    StoreDescriptor,
    decrypt_descriptor,
    encrypt_descriptor,
)


NOTES_MAX_LENGTH = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_tenant(session: AsyncSession, tenant_email: str) -> User | None:
    result = await session.execute(select(User).where(User.user_email == tenant_email))
    return result.scalar_one_or_none()


async def require_tenant(session: AsyncSession, tenant_email: str) -> User:
    tenant = await get_tenant(session, tenant_email)
    if tenant is None:
        raise TenantNotFoundError(f"Unknown tenant: {tenant_email}")
    return tenant


async def get_subuser_parent_email(session: AsyncSession, subuser_email: str) -> str | None:
    # Subusers act on behalf of the tenant that owns them.
    result = await session.execute(
        select(Subuser.user_email).where(Subuser.subuser_email == subuser_email)
    )
    return result.scalar_one_or_none()


def tenant_capabilities(tenant: User) -> frozenset[TenantCapability]:
    capabilities: set[TenantCapability] = set()
    if tenant.is_private_cloud:
        capabilities.add(TenantCapability.PRIVATE_CLOUD)
    if tenant.private_api:
        capabilities.add(TenantCapability.PRIVATE_API)
    return frozenset(capabilities)


def require_capability(tenant: User, capability: TenantCapability) -> None:
    if capability not in tenant_capabilities(tenant):
        raise FeatureNotEnabledError(
            f"Tenant {tenant.user_email} does not have the {capability.value} capability"
        )


async def get_config_row(
    session: AsyncSession, tenant_email: str, *, active_only: bool = True
) -> PrivateCloudDatabase | None:
    stmt = select(PrivateCloudDatabase).where(PrivateCloudDatabase.user_email == tenant_email)
    if active_only:
        stmt = stmt.where(PrivateCloudDatabase.is_active.is_(True))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def require_config_row(session: AsyncSession, tenant_email: str) -> PrivateCloudDatabase:
    row = await get_config_row(session, tenant_email)
    if row is None:
        raise ConfigNotFoundError(f"No private cloud configuration for {tenant_email}")
    return row


async def get_config(session: AsyncSession, tenant_email: str) -> PrivateStoreConfig | None:
    row = await get_config_row(session, tenant_email)
    return to_read_model(row) if row is not None else None


def _selected_tables_column(selected_tables: Iterable[EntityKind] | None) -> list[str] | None:
    if selected_tables is None:
        return None
    return [kind.value for kind in ordered_kinds(selected_tables)]


async def upsert_config(
    session: AsyncSession,
    *,
    tenant: User,
    descriptor: StoreDescriptor,
    notes: str | None = None,
    selected_tables: Iterable[EntityKind] | None = None,
    created_by: str | None = None,
) -> PrivateCloudDatabase:
    """Create or replace the tenant's registration with a freshly probed descriptor.

    Re-setup rewrites the single row in place and resets the lifecycle to
    ``configured``; the caller owns the transaction.
    """
    require_capability(tenant, TenantCapability.PRIVATE_CLOUD)
    if notes is not None and len(notes) > NOTES_MAX_LENGTH:
        raise ConfigurationError(f"Notes must be at most {NOTES_MAX_LENGTH} characters")

    row = await get_config_row(session, tenant.user_email, active_only=False)
    if row is None:
        row = PrivateCloudDatabase(user_email=tenant.user_email, created_by=created_by)
        session.add(row)
    row.user_id = tenant.user_id
    row.connection_string = encrypt_descriptor(descriptor)
    row.database_type = descriptor.kind.value
    row.server_host = descriptor.host
    row.server_port = descriptor.effective_port
    row.database_name = descriptor.database
    row.database_username = descriptor.username
    row.selected_tables = _selected_tables_column(selected_tables)
    row.notes = notes
    row.status = ConfigStatus.CONFIGURED.value
    row.test_status = "success"
    row.last_tested_at = _utc_now()
    row.schema_initialized = False
    row.schema_initialized_at = None
    row.is_active = True
    await session.flush()
    await session.refresh(row)
    return row


async def soft_delete_config(session: AsyncSession, tenant_email: str) -> bool:
    # Rows already copied to the private store are left untouched.
    row = await get_config_row(session, tenant_email)
    if row is None:
        return False
    row.is_active = False
    row.status = ConfigStatus.NOT_CONFIGURED.value
    await session.flush()
    await session.refresh(row)
    return True


async def set_status(
    session: AsyncSession,
    row: PrivateCloudDatabase,
    *,
    status: ConfigStatus | None = None,
    test_status: str | None = None,
    tested_at: datetime | None = None,
    schema_initialized: bool | None = None,
) -> PrivateCloudDatabase:
    if status is not None:
        row.status = status.value
    if test_status is not None:
        row.test_status = test_status
        row.last_tested_at = tested_at or _utc_now()
    if schema_initialized is not None:
        row.schema_initialized = schema_initialized
        row.schema_initialized_at = _utc_now() if schema_initialized else None
    await session.flush()
    # Server-side timestamps are expired by the flush; reload them for read models.
    await session.refresh(row)
    return row


def load_descriptor(row: PrivateCloudDatabase) -> StoreDescriptor:
    # Decrypted descriptors stay inside the process; callers must not log them.
    return decrypt_descriptor(row.connection_string)


def row_status(row: PrivateCloudDatabase) -> ConfigStatus:
    try:
        return ConfigStatus(row.status)
    except ValueError:
        return ConfigStatus.CONFIGURED


def to_read_model(row: PrivateCloudDatabase) -> PrivateStoreConfig:
    return PrivateStoreConfig(
        config_id=row.config_id,
        tenant_email=row.user_email,
        user_id=row.user_id,
        store_kind=StoreKind.parse(row.database_type),
        server_host=row.server_host,
        server_port=row.server_port,
        database_name=row.database_name,
        database_username=row.database_username,
        status=row_status(row),
        is_active=bool(row.is_active),
        schema_initialized=bool(row.schema_initialized),
        test_status=row.test_status,
        last_tested_at=row.last_tested_at,
        schema_initialized_at=row.schema_initialized_at,
        notes=row.notes,
        selected_tables=parse_selected_tables(row.selected_tables),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
