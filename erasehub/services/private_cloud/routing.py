from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from typing import AsyncIterator, Protocol

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from erasehub.core.config import get_settings
from erasehub.domain.private_cloud import ConfigStatus, TenantCapability
from erasehub.persistence import db
from erasehub.persistence.repos import private_cloud as registry
from erasehub.services.private_cloud.descriptors import StoreDescriptor
from erasehub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class RoutingPrincipal(Protocol):
    subject_email: str | None
    is_subuser: bool


@dataclass(frozen=True)
class RoutingDecision:
    is_private: bool
    tenant_email: str | None = None
    descriptor: StoreDescriptor | None = None

    @property
    def database_label(self) -> str:
        return "Private Cloud" if self.is_private else "Main Database"


SHARED = RoutingDecision(is_private=False)


class TenantContextResolver:
    """Decide which store serves a principal for one unit of work.

    Create one resolver per request; decisions are memoized on the instance and
    never outlive it.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._cache: dict[str, RoutingDecision] = {}

    async def resolve_routing_mode(self, principal: RoutingPrincipal | None) -> RoutingDecision:
        if principal is None or not principal.subject_email:
            return SHARED
        tenant_email = principal.subject_email
        if principal.is_subuser:
            parent = await registry.get_subuser_parent_email(self._session, tenant_email)
            if parent is None:
                return SHARED
            tenant_email = parent
        return await self.resolve_tenant(tenant_email)

    async def resolve_tenant(self, tenant_email: str) -> RoutingDecision:
        cached = self._cache.get(tenant_email)
        if cached is not None:
            return cached
        decision = await self._decide(tenant_email)
        self._cache[tenant_email] = decision
        return decision

    async def _decide(self, tenant_email: str) -> RoutingDecision:
        shared = RoutingDecision(is_private=False, tenant_email=tenant_email)
        tenant = await registry.get_tenant(self._session, tenant_email)
        if tenant is None:
            return shared
        if TenantCapability.PRIVATE_CLOUD not in registry.tenant_capabilities(tenant):
            return shared
        row = await registry.get_config_row(self._session, tenant_email)
        if row is None or registry.row_status(row) is not ConfigStatus.ROUTING_ACTIVE:
            return shared
        # Undecryptable credentials propagate instead of silently writing to the shared store.
        descriptor = registry.load_descriptor(row)
        return RoutingDecision(is_private=True, tenant_email=tenant_email, descriptor=descriptor)


@dataclass
class _CachedStore:
    fingerprint: str
    engine: AsyncEngine
    sessionmaker: async_sessionmaker[AsyncSession]


_private_stores: dict[str, _CachedStore] = {}


def _build_private_store(descriptor: StoreDescriptor) -> _CachedStore:
    settings = get_settings()
    engine = db.build_engine(
        descriptor.to_url(),
        connect_args=descriptor.connect_args(
            connect_timeout_s=settings.private_store_connect_timeout_s,
            command_timeout_s=settings.private_store_command_timeout_s,
        ),
        pool_size=settings.private_store_pool_size,
        max_overflow=settings.private_store_max_overflow,
    )
    return _CachedStore(
        fingerprint=descriptor.fingerprint(),
        engine=engine,
        sessionmaker=async_sessionmaker(engine, expire_on_commit=False),
    )


async def _private_store(tenant_email: str, descriptor: StoreDescriptor) -> _CachedStore:
    cached = _private_stores.get(tenant_email)
    if cached is not None and cached.fingerprint == descriptor.fingerprint():
        return cached
    if cached is not None:
        # Descriptor changed since the pool was built; drop the stale pool.
        await dispose_private_engine(tenant_email)
    store = _build_private_store(descriptor)
    _private_stores[tenant_email] = store
    increment_counter("private_store_engines_created_total")
    return store


async def dispose_private_engine(tenant_email: str) -> None:
    cached = _private_stores.pop(tenant_email, None)
    if cached is not None:
        await cached.engine.dispose()
        logger.info("private_store_engine_disposed tenant=%s", tenant_email)


async def dispose_private_engines() -> None:
    for tenant_email in list(_private_stores):
        await dispose_private_engine(tenant_email)


@asynccontextmanager
async def private_session(tenant_email: str, descriptor: StoreDescriptor) -> AsyncIterator[AsyncSession]:
    store = await _private_store(tenant_email, descriptor)
    async with store.sessionmaker() as session:
        yield session


@asynccontextmanager
async def open_store(
    decision: RoutingDecision, *, shared_session: AsyncSession | None = None
) -> AsyncIterator[AsyncSession]:
    """Yield a session bound to the store the decision names.

    A caller-owned shared session is reused as-is; anything opened here is
    closed when the block exits.
    """
    if decision.is_private and decision.tenant_email and decision.descriptor is not None:
        async with private_session(decision.tenant_email, decision.descriptor) as session:
            yield session
        return
    if shared_session is not None:
        yield shared_session
        return
    async with db.SessionLocal() as session:
        yield session
