from __future__ import annotations

import asyncio
import shutil

import pytest
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from erasehub.core.config import get_settings
from erasehub.core.errors import (
    FatalMigrationError,
    FeatureNotEnabledError,
    MigrationInProgressError,
    MigrationTimeoutError,
)
from erasehub.domain.models import Base
from erasehub.domain.private_cloud import EntityKind
from erasehub.persistence.db import SessionLocal
from erasehub.services import telemetry
from erasehub.services.private_cloud import migration
from erasehub.services.private_cloud.migration import MigrationEngine, MigrationReport
from erasehub.services.private_cloud.routing import TenantContextResolver
from erasehub.services.private_cloud.service import PrivateCloudService
from erasehub.tests.utils.stores import (
    count_rows,
    create_tenant,
    execute_in_store,
    fetch_rows,
    provision_private_store,
    seed_scenario_tenant,
    sqlite_descriptor,
)


async def _migrate_all(tenant_email: str = "a@x.com") -> MigrationReport:
    async with SessionLocal() as session:
        return await MigrationEngine(session).migrate_all_tables(tenant_email)


async def _migrate_primary(tenant_email: str = "a@x.com") -> MigrationReport:
    async with SessionLocal() as session:
        return await MigrationEngine(session).migrate_primary_tables(tenant_email)


@pytest.mark.asyncio
async def test_full_migration_copies_only_the_tenant_rows(tmp_path) -> None:
    await seed_scenario_tenant()
    descriptor = await provision_private_store("a@x.com", tmp_path / "a.db")

    report = await _migrate_all()

    assert report.status == "completed"
    assert report.kinds[EntityKind.USERS].migrated == 1
    assert report.kinds[EntityKind.SUBUSERS].migrated == 2
    assert report.kinds[EntityKind.MACHINES].migrated == 2
    assert report.kinds[EntityKind.AUDIT_REPORTS].migrated == 3
    assert report.kinds[EntityKind.ROLES].migrated == 5
    assert report.total_failed == 0
    assert report.default_role_assigned is True

    assert await count_rows(descriptor, "users") == 1
    assert await count_rows(descriptor, "subusers") == 2
    assert await count_rows(descriptor, "machines") == 2
    assert await count_rows(descriptor, "audit_reports") == 3
    # Reference data arrives complete.
    assert await count_rows(descriptor, "roles") == 5
    assert await count_rows(descriptor, "permissions") == 2
    assert await count_rows(descriptor, "role_permissions") == 3
    assert await count_rows(descriptor, "routes") == 2

    machines = {row["fingerprint_hash"] for row in await fetch_rows(descriptor, "machines")}
    assert machines == {"fp-s1-01", "fp-s2-02"}
    reports = await fetch_rows(descriptor, "audit_reports")
    assert [row["report_id"] for row in reports] == [501, 502, 503]
    assert reports[0]["report_details_json"] == {"drives": [{"serial": "report-1", "passes": 3}]}
    subusers = await fetch_rows(descriptor, "subusers")
    assert [row["subuser_id"] for row in subusers] == [100, 101]
    user_roles = await fetch_rows(descriptor, "user_roles")
    assert [(row["user_id"], row["role_id"]) for row in user_roles] == [(10, 1)]

    assert telemetry.counters_snapshot()["migration_runs_total"] == 1
    assert telemetry.migration_stats()["runs"] == 1


@pytest.mark.asyncio
async def test_rerun_is_idempotent(tmp_path) -> None:
    await seed_scenario_tenant()
    descriptor = await provision_private_store("a@x.com", tmp_path / "a.db")

    first = await _migrate_all()
    second = await _migrate_all()

    assert first.total_migrated > 0
    assert second.total_migrated == 0
    assert second.total_failed == 0
    assert second.kinds[EntityKind.AUDIT_REPORTS].existing == 3
    assert second.default_role_assigned is False
    assert await count_rows(descriptor, "audit_reports") == 3
    assert await count_rows(descriptor, "user_roles") == 1


@pytest.mark.asyncio
async def test_failed_row_is_reported_and_others_continue(tmp_path) -> None:
    await seed_scenario_tenant()
    descriptor = await provision_private_store("a@x.com", tmp_path / "a.db")
    roles = Base.metadata.tables["roles"]
    # A different key already holds the name of source role 5, so its insert violates uniqueness.
    await execute_in_store(descriptor, insert(roles).values(role_id=99, role_name="Viewer", description="", hierarchy_level=9))

    report = await _migrate_all()

    assert report.status == "partial"
    assert report.kinds[EntityKind.ROLES].failed == 1
    assert report.kinds[EntityKind.ROLES].migrated == 4
    assert report.failures[0].kind is EntityKind.ROLES
    assert report.failures[0].key == "5"
    assert report.kinds[EntityKind.AUDIT_REPORTS].migrated == 3
    assert await count_rows(descriptor, "roles") == 5
    assert report.to_dict()["totals"]["failed"] == 1


@pytest.mark.asyncio
async def test_reference_conflict_is_reported_without_overwrite(tmp_path) -> None:
    await seed_scenario_tenant()
    descriptor = await provision_private_store("a@x.com", tmp_path / "a.db")
    roles = Base.metadata.tables["roles"]
    await execute_in_store(descriptor, insert(roles).values(role_id=1, role_name="Owner", description="", hierarchy_level=0))

    report = await _migrate_all()

    assert report.kinds[EntityKind.ROLES].existing == 1
    assert len(report.conflicts) == 1
    conflict = report.conflicts[0].to_dict()
    assert conflict["source"] == {"role_name": "SuperAdmin"}
    assert conflict["target"] == {"role_name": "Owner"}
    target_roles = {row["role_id"]: row["role_name"] for row in await fetch_rows(descriptor, "roles")}
    assert target_roles[1] == "Owner"
    # The default role only exists under another name in the target.
    assert report.default_role_assigned is False


@pytest.mark.asyncio
async def test_selected_tables_narrow_tenant_data(tmp_path) -> None:
    await seed_scenario_tenant()
    descriptor = await provision_private_store(
        "a@x.com", tmp_path / "a.db", selected_tables=[EntityKind.AUDIT_REPORTS]
    )

    report = await _migrate_all()

    assert EntityKind.MACHINES not in report.kinds
    assert report.kinds[EntityKind.AUDIT_REPORTS].migrated == 3
    assert await count_rows(descriptor, "machines") == 0
    assert await count_rows(descriptor, "roles") == 5


@pytest.mark.asyncio
async def test_primary_variant_copies_core_tenant_kinds(tmp_path) -> None:
    await seed_scenario_tenant()
    descriptor = await provision_private_store("a@x.com", tmp_path / "a.db")

    report = await _migrate_primary()

    assert report.variant == "primary"
    assert list(report.kinds) == [
        EntityKind.USERS,
        EntityKind.SUBUSERS,
        EntityKind.MACHINES,
        EntityKind.AUDIT_REPORTS,
    ]
    assert await count_rows(descriptor, "roles") == 0
    assert await count_rows(descriptor, "machines") == 2
    assert report.default_role_assigned is False


@pytest.mark.asyncio
async def test_unreachable_store_aborts_before_writing(tmp_path) -> None:
    await seed_scenario_tenant()
    store_dir = tmp_path / "store"
    store_dir.mkdir()
    descriptor = await provision_private_store("a@x.com", store_dir / "a.db")
    moved = tmp_path / "moved"
    shutil.move(str(store_dir), str(moved))

    with pytest.raises(FatalMigrationError):
        await _migrate_all()

    shutil.move(str(moved), str(store_dir))
    assert await count_rows(descriptor, "users") == 0
    assert await count_rows(descriptor, "roles") == 0


@pytest.mark.asyncio
async def test_preflight_requires_initialized_schema(tmp_path) -> None:
    await seed_scenario_tenant()
    with pytest.raises(FatalMigrationError):
        await _migrate_all()

    async with SessionLocal() as session:
        await PrivateCloudService(session).setup("a@x.com", sqlite_descriptor(tmp_path / "a.db"))
    with pytest.raises(FatalMigrationError):
        await _migrate_all()


@pytest.mark.asyncio
async def test_migration_requires_capability() -> None:
    async with SessionLocal() as session:
        await create_tenant(session, "plain@x.com", private_cloud=False)
        await session.commit()
    with pytest.raises(FeatureNotEnabledError):
        await _migrate_all("plain@x.com")


@pytest.mark.asyncio
async def test_soft_delete_keeps_private_rows_and_routes_back(tmp_path) -> None:
    await seed_scenario_tenant()
    descriptor = await provision_private_store("a@x.com", tmp_path / "a.db", activate=True)
    await _migrate_all()

    async with SessionLocal() as session:
        assert await PrivateCloudService(session).delete_config("a@x.com") is True
        decision = await TenantContextResolver(session).resolve_tenant("a@x.com")
    assert decision.is_private is False
    assert await count_rows(descriptor, "audit_reports") == 3


@pytest.mark.asyncio
async def test_concurrent_migration_for_same_tenant_is_rejected(tmp_path) -> None:
    await seed_scenario_tenant()
    await provision_private_store("a@x.com", tmp_path / "a.db")
    lock = migration._tenant_locks.setdefault("a@x.com", asyncio.Lock())
    await lock.acquire()
    try:
        with pytest.raises(MigrationInProgressError):
            await _migrate_all()
    finally:
        lock.release()
    assert telemetry.counters_snapshot()["migration_rejected_in_progress_total"] == 1
    report = await _migrate_all()
    assert report.status == "completed"
    assert "a@x.com" not in migration._tenant_locks


@pytest.mark.asyncio
async def test_migration_timeout_releases_lock(monkeypatch, tmp_path) -> None:
    await seed_scenario_tenant()
    await provision_private_store("a@x.com", tmp_path / "a.db")
    monkeypatch.setenv("MIGRATION_TIMEOUT_S", "0.05")
    get_settings.cache_clear()

    async def _slow_run(self, tenant_email: str, *, variant: str) -> MigrationReport:
        await asyncio.sleep(1)
        raise AssertionError("timeout did not fire")

    monkeypatch.setattr(MigrationEngine, "_run", _slow_run)
    with pytest.raises(MigrationTimeoutError):
        await _migrate_all()
    assert "a@x.com" not in migration._tenant_locks


def _count_store_commits(monkeypatch, store, *, fail_on: int | None = None) -> list[int]:
    # Counts commits on sessions bound to the private store; shared-store commits pass through.
    commits: list[int] = []
    original = AsyncSession.commit

    async def _commit(self: AsyncSession) -> None:
        bind = getattr(self, "bind", None)
        if bind is not None and bind.url.database == str(store):
            commits.append(len(commits) + 1)
            if fail_on is not None and len(commits) == fail_on:
                raise RuntimeError("store went away")
        await original(self)

    monkeypatch.setattr(AsyncSession, "commit", _commit)
    return commits


@pytest.mark.asyncio
async def test_rows_are_committed_in_batches(monkeypatch, tmp_path) -> None:
    await seed_scenario_tenant()
    store = tmp_path / "a.db"
    await provision_private_store("a@x.com", store)
    monkeypatch.setenv("MIGRATION_BATCH_SIZE", "2")
    get_settings.cache_clear()
    commits = _count_store_commits(monkeypatch, store)

    report = await _migrate_primary()

    assert report.total_migrated == 8
    # users 1, subusers 2, machines 2, audit_reports 2: one commit per full batch plus one per table.
    assert len(commits) == 7


@pytest.mark.asyncio
async def test_interrupted_migration_keeps_committed_batches(monkeypatch, tmp_path) -> None:
    await seed_scenario_tenant()
    store = tmp_path / "a.db"
    descriptor = await provision_private_store("a@x.com", store)
    monkeypatch.setenv("MIGRATION_BATCH_SIZE", "2")
    get_settings.cache_clear()
    # The seventh commit closes the audit_reports table after its first batch of two.
    _count_store_commits(monkeypatch, store, fail_on=7)

    with pytest.raises(RuntimeError):
        await _migrate_primary()

    assert await count_rows(descriptor, "users") == 1
    assert await count_rows(descriptor, "machines") == 2
    assert await count_rows(descriptor, "audit_reports") == 2
    assert "a@x.com" not in migration._tenant_locks
