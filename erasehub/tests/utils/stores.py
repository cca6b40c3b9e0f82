from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from erasehub.domain.models import (
    AuditReport,
    Base,
    Machine,
    Permission,
    Role,
    RolePermission,
    Route,
    Subuser,
    User,
    UserRole,
)
from erasehub.domain.private_cloud import StoreKind
from erasehub.persistence.db import SessionLocal, build_engine
from erasehub.services.private_cloud.descriptors import StoreDescriptor
from erasehub.services.private_cloud.service import PrivateCloudService


def sqlite_descriptor(path: Path) -> StoreDescriptor:
    return StoreDescriptor(kind=StoreKind.SQLITE, database=str(path))


async def create_tenant(
    session: AsyncSession,
    email: str,
    *,
    user_id: int | None = None,
    private_cloud: bool = True,
) -> User:
    user = User(
        user_id=user_id,
        user_name=email.split("@", 1)[0],
        user_email=email,
        is_private_cloud=private_cloud,
    )
    session.add(user)
    await session.flush()
    return user


async def create_subuser(
    session: AsyncSession, owner: User, email: str, *, subuser_id: int | None = None
) -> Subuser:
    subuser = Subuser(
        subuser_id=subuser_id,
        subuser_email=email,
        subuser_password="hashed-password",
        user_email=owner.user_email,
        superuser_id=owner.user_id,
    )
    session.add(subuser)
    await session.flush()
    return subuser


def machine(fingerprint: str, *, user_email: str | None = None, subuser_email: str | None = None) -> Machine:
    return Machine(
        fingerprint_hash=fingerprint,
        mac_address=f"00:11:22:33:44:{fingerprint[-2:]}",
        user_email=user_email,
        subuser_email=subuser_email,
        machine_details_json={"os": "linux", "drives": 2},
    )


def report(client_email: str, name: str, *, report_id: int | None = None) -> AuditReport:
    return AuditReport(
        report_id=report_id,
        client_email=client_email,
        report_name=name,
        erasure_method="NIST 800-88 Purge",
        report_details_json={"drives": [{"serial": name, "passes": 3}]},
    )


async def seed_reference_data(session: AsyncSession, *, role_names: list[str] | None = None) -> list[Role]:
    names = role_names or ["SuperAdmin", "Admin", "Manager", "Operator", "Viewer"]
    roles = [
        Role(role_id=index + 1, role_name=name, description=f"{name} role", hierarchy_level=index)
        for index, name in enumerate(names)
    ]
    session.add_all(roles)
    session.add_all(
        [
            Permission(permission_id=1, permission_name="FullAccess"),
            Permission(permission_id=2, permission_name="ViewReports"),
        ]
    )
    await session.flush()
    session.add_all(
        [
            RolePermission(role_id=1, permission_id=1),
            RolePermission(role_id=1, permission_id=2),
            RolePermission(role_id=2, permission_id=2),
        ]
    )
    session.add_all(
        [
            Route(route_id=1, route_path="/api/reports", http_method="GET"),
            Route(route_id=2, route_path="/api/machines", http_method="POST"),
        ]
    )
    await session.flush()
    return roles


async def seed_scenario_tenant(email: str = "a@x.com") -> dict[str, Any]:
    """Tenant with 3 reports and 2 subusers that each own one machine, plus 5 roles.

    A second tenant's rows sit alongside to prove they never leak.
    """
    async with SessionLocal() as session:
        await seed_reference_data(session)
        tenant = await create_tenant(session, email, user_id=10)
        first = await create_subuser(session, tenant, "s1@x.com", subuser_id=100)
        second = await create_subuser(session, tenant, "s2@x.com", subuser_id=101)
        session.add_all(
            [
                machine("fp-s1-01", subuser_email=first.subuser_email),
                machine("fp-s2-02", subuser_email=second.subuser_email),
                report(email, "report-1", report_id=501),
                report(email, "report-2", report_id=502),
                report(email, "report-3", report_id=503),
            ]
        )
        other = await create_tenant(session, "b@y.com", user_id=20)
        other_sub = await create_subuser(session, other, "t1@y.com", subuser_id=200)
        session.add_all(
            [
                machine("fp-b-99", user_email=other.user_email),
                machine("fp-t1-98", subuser_email=other_sub.subuser_email),
                report(other.user_email, "other-report", report_id=900),
            ]
        )
        await session.flush()
        session.add(UserRole(user_id=other.user_id, role_id=2))
        await session.commit()
    return {"tenant_email": email, "tenant_id": 10, "subuser_ids": [100, 101]}


async def provision_private_store(
    tenant_email: str,
    path: Path,
    *,
    activate: bool = False,
    selected_tables: Any = None,
) -> StoreDescriptor:
    # Walk the lifecycle the same way a tenant would through the API.
    descriptor = sqlite_descriptor(path)
    async with SessionLocal() as session:
        service = PrivateCloudService(session)
        await service.setup(tenant_email, descriptor, selected_tables=selected_tables)
        await service.initialize_schema(tenant_email)
        if activate:
            await service.activate_routing(tenant_email)
    return descriptor


async def count_rows(descriptor: StoreDescriptor, table_name: str, *where: Any) -> int:
    table = Base.metadata.tables[table_name]
    engine = build_engine(descriptor.to_url(), pooled=False)
    try:
        async with engine.connect() as conn:
            stmt = select(func.count()).select_from(table)
            if where:
                stmt = stmt.where(*where)
            return int((await conn.execute(stmt)).scalar() or 0)
    finally:
        await engine.dispose()


async def fetch_rows(descriptor: StoreDescriptor, table_name: str) -> list[dict[str, Any]]:
    table = Base.metadata.tables[table_name]
    engine = build_engine(descriptor.to_url(), pooled=False)
    try:
        async with engine.connect() as conn:
            result = await conn.execute(select(table).order_by(*table.primary_key.columns))
            return [dict(row) for row in result.mappings().all()]
    finally:
        await engine.dispose()


async def execute_in_store(descriptor: StoreDescriptor, *statements: Any) -> None:
    engine = build_engine(descriptor.to_url(), pooled=False)
    try:
        async with engine.begin() as conn:
            for statement in statements:
                await conn.execute(statement)
    finally:
        await engine.dispose()
