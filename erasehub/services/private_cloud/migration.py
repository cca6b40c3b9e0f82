from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any, Iterable, Iterator, Sequence

from sqlalchemy import ColumnElement, Table, insert, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from erasehub.core.config import Settings, get_settings
from erasehub.core.errors import (
    FatalMigrationError,
    MigrationInProgressError,
    MigrationTimeoutError,
)
from erasehub.domain.models import Base
from erasehub.domain.private_cloud import (
    ALL_KINDS,
    PRIMARY_KINDS,
    ConfigStatus,
    EntityKind,
    KindClass,
    TenantCapability,
    ordered_kinds,
    parse_selected_tables,
)
from erasehub.persistence.repos import private_cloud as registry
from erasehub.services.private_cloud.descriptors import StoreDescriptor
from erasehub.services.private_cloud.routing import private_session
from erasehub.services.private_cloud.tester import probe_connection
from erasehub.services.telemetry import increment_counter, record_migration


logger = logging.getLogger(__name__)

# Natural keys that must agree when a reference row already exists in the target.
_REFERENCE_NATURAL_KEYS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.ROLES: ("role_name",),
    EntityKind.PERMISSIONS: ("permission_name",),
    EntityKind.ROUTES: ("route_path", "http_method"),
}

_tenant_locks: dict[str, asyncio.Lock] = {}


@dataclass
class KindResult:
    found: int = 0
    migrated: int = 0
    failed: int = 0
    existing: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "found": self.found,
            "migrated": self.migrated,
            "failed": self.failed,
            "existing": self.existing,
        }


@dataclass(frozen=True)
class RowFailure:
    kind: EntityKind
    key: str
    error_type: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "table": self.kind.value,
            "key": self.key,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass(frozen=True)
class ReferenceConflict:
    kind: EntityKind
    key: str
    source: dict[str, Any]
    target: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.kind.value,
            "key": self.key,
            "source": dict(self.source),
            "target": dict(self.target),
        }


@dataclass
class MigrationReport:
    tenant_email: str
    variant: str
    started_at: datetime
    kinds: dict[EntityKind, KindResult] = field(default_factory=dict)
    failures: list[RowFailure] = field(default_factory=list)
    conflicts: list[ReferenceConflict] = field(default_factory=list)
    default_role_assigned: bool = False
    duration_ms: int = 0

    @property
    def total_found(self) -> int:
        return sum(result.found for result in self.kinds.values())

    @property
    def total_migrated(self) -> int:
        return sum(result.migrated for result in self.kinds.values())

    @property
    def total_failed(self) -> int:
        return sum(result.failed for result in self.kinds.values())

    @property
    def status(self) -> str:
        return "partial" if self.total_failed else "completed"

    def result_for(self, kind: EntityKind) -> KindResult:
        return self.kinds.setdefault(kind, KindResult())

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_email": self.tenant_email,
            "variant": self.variant,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "tables": {
                kind.value: result.to_dict()
                for kind, result in sorted(self.kinds.items(), key=lambda item: ALL_KINDS.index(item[0]))
            },
            "totals": {
                "found": self.total_found,
                "migrated": self.total_migrated,
                "failed": self.total_failed,
            },
            "failures": [failure.to_dict() for failure in self.failures],
            "reference_conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "default_role_assigned": self.default_role_assigned,
        }


@dataclass(frozen=True)
class Ownership:
    tenant_id: int
    tenant_email: str
    subuser_ids: tuple[int, ...]
    subuser_emails: tuple[str, ...]

    @property
    def owner_emails(self) -> tuple[str, ...]:
        return (self.tenant_email, *self.subuser_emails)


def _table(kind: EntityKind) -> Table:
    return Base.metadata.tables[kind.table_name]


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    step = max(1, size)
    for start in range(0, len(items), step):
        yield items[start : start + step]


def _format_key(key: tuple[Any, ...]) -> str:
    return ",".join(str(part) for part in key)


def ownership_clause(kind: EntityKind, ownership: Ownership) -> ColumnElement[bool] | None:
    """Row filter selecting the tenant's rows of ``kind``; ``None`` for shared reference data."""
    table = _table(kind)
    c = table.c
    if kind.kind_class is KindClass.REFERENCE:
        return None
    if kind is EntityKind.USERS:
        return c.user_email == ownership.tenant_email
    if kind is EntityKind.SUBUSERS:
        return or_(c.user_email == ownership.tenant_email, c.superuser_id == ownership.tenant_id)
    if kind is EntityKind.MACHINES:
        return or_(
            c.user_email.in_(ownership.owner_emails),
            c.subuser_email.in_(ownership.subuser_emails),
        )
    if kind is EntityKind.AUDIT_REPORTS:
        return c.client_email.in_(ownership.owner_emails)
    if kind in (EntityKind.SESSIONS, EntityKind.COMMANDS, EntityKind.LOGS):
        return c.user_email.in_(ownership.owner_emails)
    if kind is EntityKind.USER_ROLES:
        return c.user_id == ownership.tenant_id
    if kind is EntityKind.SUBUSER_ROLES:
        return c.subuser_id.in_(ownership.subuser_ids)
    raise ValueError(f"No ownership rule for {kind.value}")


async def resolve_ownership(shared: AsyncSession, tenant_email: str, tenant_id: int) -> Ownership:
    subusers = _table(EntityKind.SUBUSERS)
    result = await shared.execute(
        select(subusers.c.subuser_id, subusers.c.subuser_email)
        .where(ownership_clause(EntityKind.SUBUSERS, _bare_ownership(tenant_email, tenant_id)))
        .order_by(subusers.c.subuser_id)
    )
    rows = result.all()
    return Ownership(
        tenant_id=tenant_id,
        tenant_email=tenant_email,
        subuser_ids=tuple(int(row.subuser_id) for row in rows),
        subuser_emails=tuple(str(row.subuser_email) for row in rows),
    )


def _bare_ownership(tenant_email: str, tenant_id: int) -> Ownership:
    return Ownership(tenant_id=tenant_id, tenant_email=tenant_email, subuser_ids=(), subuser_emails=())


def kinds_for_all_tables(selected_tables: Iterable[EntityKind] | None) -> list[EntityKind]:
    # Reference kinds always migrate; the selection narrows tenant data only.
    if selected_tables is None:
        return list(ALL_KINDS)
    selected = set(selected_tables)
    return [
        kind
        for kind in ALL_KINDS
        if kind.kind_class is KindClass.REFERENCE or kind in selected
    ]


class MigrationEngine:
    """Copy a tenant's rows from the shared store into its private store.

    Rows keep their primary keys, already-present keys are skipped and each
    insert runs in its own savepoint so one bad row never aborts a batch.
    """

    def __init__(self, shared: AsyncSession, *, settings: Settings | None = None) -> None:
        self._shared = shared
        self._settings = settings or get_settings()

    async def migrate_all_tables(self, tenant_email: str) -> MigrationReport:
        return await self._guarded(tenant_email, variant="all")

    async def migrate_primary_tables(self, tenant_email: str) -> MigrationReport:
        return await self._guarded(tenant_email, variant="primary")

    async def _guarded(self, tenant_email: str, *, variant: str) -> MigrationReport:
        lock = _tenant_locks.setdefault(tenant_email, asyncio.Lock())
        if lock.locked():
            increment_counter("migration_rejected_in_progress_total")
            raise MigrationInProgressError(f"A migration for {tenant_email} is already running")
        try:
            async with lock:
                try:
                    return await asyncio.wait_for(
                        self._run(tenant_email, variant=variant),
                        timeout=self._settings.migration_timeout_s,
                    )
                except asyncio.TimeoutError as exc:
                    increment_counter("migration_timeouts_total")
                    logger.warning("migration_timeout tenant=%s variant=%s", tenant_email, variant)
                    raise MigrationTimeoutError(
                        f"Migration exceeded {self._settings.migration_timeout_s:g}s; committed batches were kept"
                    ) from exc
        finally:
            # Contenders are rejected rather than queued, so a released lock has no waiters.
            if not lock.locked() and _tenant_locks.get(tenant_email) is lock:
                del _tenant_locks[tenant_email]

    async def _preflight(self, tenant_email: str) -> tuple[int, StoreDescriptor, frozenset[EntityKind] | None]:
        tenant = await registry.require_tenant(self._shared, tenant_email)
        registry.require_capability(tenant, TenantCapability.PRIVATE_CLOUD)
        row = await registry.get_config_row(self._shared, tenant_email)
        if row is None:
            raise FatalMigrationError("No active private cloud configuration")
        if not registry.row_status(row).at_least(ConfigStatus.SCHEMA_READY):
            raise FatalMigrationError("Private store schema is not initialized")
        descriptor = registry.load_descriptor(row)
        probe = await probe_connection(descriptor)
        if not probe.success:
            raise FatalMigrationError(f"Private store is unreachable: {probe.error}")
        if probe.missing_tables:
            raise FatalMigrationError(
                "Private store is missing tables: " + ", ".join(probe.missing_tables)
            )
        selected = parse_selected_tables(row.selected_tables)
        return int(tenant.user_id), descriptor, selected

    async def _run(self, tenant_email: str, *, variant: str) -> MigrationReport:
        started = time.monotonic()
        report = MigrationReport(
            tenant_email=tenant_email,
            variant=variant,
            started_at=datetime.now(timezone.utc),
        )
        tenant_id, descriptor, selected = await self._preflight(tenant_email)
        ownership = await resolve_ownership(self._shared, tenant_email, tenant_id)
        if variant == "primary":
            kinds = ordered_kinds(PRIMARY_KINDS)
        else:
            kinds = kinds_for_all_tables(selected)
        logger.info(
            "migration_started tenant=%s variant=%s kinds=%s subusers=%d",
            tenant_email,
            variant,
            ",".join(kind.value for kind in kinds),
            len(ownership.subuser_ids),
        )

        async with private_session(tenant_email, descriptor) as target:
            for kind in kinds:
                await self._migrate_kind(target, kind, ownership, report, descriptor)
            report.default_role_assigned = await self._reconcile_roles(target, ownership)

        report.duration_ms = int((time.monotonic() - started) * 1000)
        increment_counter("migration_runs_total")
        increment_counter("migration_rows_migrated_total", report.total_migrated)
        if report.total_failed:
            increment_counter("migration_rows_failed_total", report.total_failed)
        record_migration(
            variant=variant,
            status=report.status,
            duration_ms=float(report.duration_ms),
            migrated=report.total_migrated,
            failed=report.total_failed,
        )
        logger.info(
            "migration_finished tenant=%s variant=%s status=%s migrated=%d failed=%d duration_ms=%d",
            tenant_email,
            variant,
            report.status,
            report.total_migrated,
            report.total_failed,
            report.duration_ms,
        )
        return report

    async def _snapshot(self, kind: EntityKind, ownership: Ownership) -> list[dict[str, Any]]:
        # Core select keeps the snapshot out of the ORM identity map.
        table = _table(kind)
        stmt = select(table)
        clause = ownership_clause(kind, ownership)
        if clause is not None:
            stmt = stmt.where(clause)
        stmt = stmt.order_by(*table.primary_key.columns)
        result = await self._shared.execute(stmt)
        return [dict(row) for row in result.mappings().all()]

    async def _existing_keys(
        self, target: AsyncSession, table: Table, keys: list[tuple[Any, ...]]
    ) -> set[tuple[Any, ...]]:
        pk_cols = list(table.primary_key.columns)
        lead = pk_cols[0]
        wanted = set(keys)
        found: set[tuple[Any, ...]] = set()
        leads = sorted({key[0] for key in keys})
        for chunk in _chunks(leads, self._settings.migration_existence_chunk_size):
            result = await target.execute(select(*pk_cols).where(lead.in_(list(chunk))))
            # Composite keys are narrowed by the lead column, then matched exactly.
            found.update(key for key in (tuple(row) for row in result.all()) if key in wanted)
        return found

    async def _migrate_kind(
        self,
        target: AsyncSession,
        kind: EntityKind,
        ownership: Ownership,
        report: MigrationReport,
        descriptor: StoreDescriptor,
    ) -> None:
        table = _table(kind)
        pk_names = [column.name for column in table.primary_key.columns]
        rows = await self._snapshot(kind, ownership)
        result = report.result_for(kind)
        result.found = len(rows)
        if not rows:
            return

        keyed = [(tuple(row[name] for name in pk_names), row) for row in rows]
        existing = await self._existing_keys(target, table, [key for key, _ in keyed])
        result.existing = len(existing)
        if kind in _REFERENCE_NATURAL_KEYS and existing:
            report.conflicts.extend(
                await self._reference_conflicts(target, kind, table, keyed, existing)
            )

        pending = 0
        for key, row in keyed:
            if key in existing:
                continue
            try:
                async with target.begin_nested():
                    await target.execute(insert(table).values(**row))
            except SQLAlchemyError as exc:
                result.failed += 1
                error_type = type(getattr(exc, "orig", None) or exc).__name__
                message = descriptor.scrub(str(getattr(exc, "orig", None) or exc))[:500]
                report.failures.append(
                    RowFailure(kind=kind, key=_format_key(key), error_type=error_type, message=message)
                )
                logger.warning(
                    "migration_row_failed tenant=%s table=%s key=%s error_type=%s",
                    ownership.tenant_email,
                    kind.value,
                    _format_key(key),
                    error_type,
                )
                continue
            result.migrated += 1
            pending += 1
            if pending >= self._settings.migration_batch_size:
                await target.commit()
                pending = 0
        await target.commit()
        logger.info(
            "migration_table_done tenant=%s table=%s found=%d migrated=%d existing=%d failed=%d",
            ownership.tenant_email,
            kind.value,
            result.found,
            result.migrated,
            result.existing,
            result.failed,
        )

    async def _reference_conflicts(
        self,
        target: AsyncSession,
        kind: EntityKind,
        table: Table,
        keyed: list[tuple[tuple[Any, ...], dict[str, Any]]],
        existing: set[tuple[Any, ...]],
    ) -> list[ReferenceConflict]:
        natural = _REFERENCE_NATURAL_KEYS[kind]
        pk_col = list(table.primary_key.columns)[0]
        source_by_key = {key: row for key, row in keyed if key in existing}
        conflicts: list[ReferenceConflict] = []
        ids = sorted(key[0] for key in source_by_key)
        for chunk in _chunks(ids, self._settings.migration_existence_chunk_size):
            result = await target.execute(
                select(pk_col, *(table.c[name] for name in natural)).where(pk_col.in_(list(chunk)))
            )
            for row in result.mappings().all():
                key = (row[pk_col.name],)
                source_row = source_by_key[key]
                source_values = {name: source_row[name] for name in natural}
                target_values = {name: row[name] for name in natural}
                if source_values != target_values:
                    conflicts.append(
                        ReferenceConflict(
                            kind=kind, key=_format_key(key), source=source_values, target=target_values
                        )
                    )
        if conflicts:
            increment_counter("migration_reference_conflicts_total", len(conflicts))
            logger.warning(
                "migration_reference_conflicts table=%s count=%d", kind.value, len(conflicts)
            )
        return conflicts

    async def _reconcile_roles(self, target: AsyncSession, ownership: Ownership) -> bool:
        """Give the tenant the default role in its private store when it holds none."""
        users = _table(EntityKind.USERS)
        roles = _table(EntityKind.ROLES)
        user_roles = _table(EntityKind.USER_ROLES)

        present = await target.execute(
            select(users.c.user_id).where(users.c.user_id == ownership.tenant_id)
        )
        if present.first() is None:
            return False
        assigned = await target.execute(
            select(user_roles.c.role_id).where(user_roles.c.user_id == ownership.tenant_id).limit(1)
        )
        if assigned.first() is not None:
            return False
        role_name = self._settings.migration_default_role
        role = await target.execute(select(roles.c.role_id).where(roles.c.role_name == role_name))
        role_id = role.scalar_one_or_none()
        if role_id is None:
            logger.warning(
                "migration_default_role_missing tenant=%s role=%s", ownership.tenant_email, role_name
            )
            return False
        try:
            async with target.begin_nested():
                await target.execute(
                    insert(user_roles).values(
                        user_id=ownership.tenant_id,
                        role_id=role_id,
                        assigned_at=datetime.now(timezone.utc),
                        assigned_by_email="system",
                    )
                )
        except SQLAlchemyError as exc:
            logger.warning(
                "migration_default_role_failed tenant=%s error_type=%s",
                ownership.tenant_email,
                type(exc).__name__,
            )
            await target.commit()
            return False
        await target.commit()
        logger.info("migration_default_role_assigned tenant=%s role=%s", ownership.tenant_email, role_name)
        return True
