from __future__ import annotations

from dataclasses import dataclass

import pytest
from sqlalchemy import update

from erasehub.core.errors import ConfigurationError
from erasehub.domain.models import PrivateCloudDatabase, User
from erasehub.persistence.db import SessionLocal
from erasehub.services.private_cloud import routing
from erasehub.services.private_cloud.routing import TenantContextResolver, open_store
from erasehub.services.private_cloud.service import tenant_statistics
from erasehub.tests.utils.stores import (
    create_subuser,
    create_tenant,
    provision_private_store,
    report,
)


@dataclass
class _Caller:
    subject_email: str | None
    is_subuser: bool = False


@pytest.mark.asyncio
async def test_tenant_without_config_uses_shared_store() -> None:
    async with SessionLocal() as session:
        await create_tenant(session, "a@x.com")
        await session.commit()
        decision = await TenantContextResolver(session).resolve_routing_mode(_Caller("a@x.com"))
    assert decision.is_private is False
    assert decision.database_label == "Main Database"


@pytest.mark.asyncio
async def test_anonymous_and_unknown_callers_use_shared_store() -> None:
    async with SessionLocal() as session:
        resolver = TenantContextResolver(session)
        assert (await resolver.resolve_routing_mode(None)).is_private is False
        assert (await resolver.resolve_routing_mode(_Caller(None))).is_private is False
        assert (await resolver.resolve_routing_mode(_Caller("ghost@x.com"))).is_private is False
        orphan = await resolver.resolve_routing_mode(_Caller("orphan@x.com", is_subuser=True))
        assert orphan.is_private is False


@pytest.mark.asyncio
async def test_schema_ready_is_not_enough_to_route(tmp_path) -> None:
    async with SessionLocal() as session:
        await create_tenant(session, "a@x.com")
        await session.commit()
    await provision_private_store("a@x.com", tmp_path / "a.db", activate=False)
    async with SessionLocal() as session:
        decision = await TenantContextResolver(session).resolve_tenant("a@x.com")
    assert decision.is_private is False


@pytest.mark.asyncio
async def test_subuser_inherits_owner_private_store(tmp_path) -> None:
    async with SessionLocal() as session:
        tenant = await create_tenant(session, "a@x.com")
        await create_subuser(session, tenant, "s1@x.com")
        await session.commit()
    descriptor = await provision_private_store("a@x.com", tmp_path / "a.db", activate=True)

    async with SessionLocal() as session:
        resolver = TenantContextResolver(session)
        owner = await resolver.resolve_routing_mode(_Caller("a@x.com"))
        member = await resolver.resolve_routing_mode(_Caller("s1@x.com", is_subuser=True))
    assert owner.is_private is True
    assert member.is_private is True
    assert member.tenant_email == "a@x.com"
    assert member.descriptor == descriptor
    assert member.database_label == "Private Cloud"


@pytest.mark.asyncio
async def test_capability_revocation_routes_back_to_shared(tmp_path) -> None:
    async with SessionLocal() as session:
        await create_tenant(session, "a@x.com")
        await session.commit()
    await provision_private_store("a@x.com", tmp_path / "a.db", activate=True)
    async with SessionLocal() as session:
        await session.execute(update(User).where(User.user_email == "a@x.com").values(is_private_cloud=False))
        await session.commit()
        decision = await TenantContextResolver(session).resolve_tenant("a@x.com")
    assert decision.is_private is False


@pytest.mark.asyncio
async def test_undecryptable_credentials_fail_closed(tmp_path) -> None:
    async with SessionLocal() as session:
        await create_tenant(session, "a@x.com")
        await session.commit()
    await provision_private_store("a@x.com", tmp_path / "a.db", activate=True)
    async with SessionLocal() as session:
        await session.execute(
            update(PrivateCloudDatabase)
            .where(PrivateCloudDatabase.user_email == "a@x.com")
            .values(connection_string="not-a-token")
        )
        await session.commit()
        with pytest.raises(ConfigurationError):
            await TenantContextResolver(session).resolve_tenant("a@x.com")


@pytest.mark.asyncio
async def test_routed_reads_hit_private_store_and_engine_is_reused(tmp_path) -> None:
    async with SessionLocal() as session:
        await create_tenant(session, "a@x.com")
        session.add(report("a@x.com", "shared-only"))
        await session.commit()
    await provision_private_store("a@x.com", tmp_path / "a.db", activate=True)

    async with SessionLocal() as session:
        decision = await TenantContextResolver(session).resolve_tenant("a@x.com")
        async with open_store(decision, shared_session=session) as store:
            assert store is not session
            stats = await tenant_statistics(store, "a@x.com")
        first_engine = routing._private_stores["a@x.com"].engine
        async with open_store(decision, shared_session=session) as store:
            await tenant_statistics(store, "a@x.com")
        assert routing._private_stores["a@x.com"].engine is first_engine
    # Nothing migrated yet, so the private store is empty.
    assert stats == {"audit_reports": 0, "subusers": 0, "machines": 0}

    await routing.dispose_private_engine("a@x.com")
    assert "a@x.com" not in routing._private_stores


@pytest.mark.asyncio
async def test_shared_decision_reuses_caller_session() -> None:
    async with SessionLocal() as session:
        await create_tenant(session, "a@x.com")
        session.add(report("a@x.com", "r1"))
        await session.commit()
        decision = await TenantContextResolver(session).resolve_tenant("a@x.com")
        async with open_store(decision, shared_session=session) as store:
            assert store is session
            stats = await tenant_statistics(store, "a@x.com")
    assert stats["audit_reports"] == 1
