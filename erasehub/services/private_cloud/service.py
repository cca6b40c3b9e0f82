from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from erasehub.core.config import get_settings
from erasehub.core.errors import (
    ConfigurationError,
    ConnectivityError,
    ErasehubError,
    InvalidDescriptorError,
    SchemaError,
)
from erasehub.domain.models import AuditReport, Machine, Subuser
from erasehub.domain.private_cloud import (
    ConfigStatus,
    EntityKind,
    PrivateStoreConfig,
    StoreKind,
    TenantCapability,
)
from erasehub.persistence.repos import private_cloud as registry
from erasehub.services.private_cloud import schema
from erasehub.services.private_cloud.descriptors import StoreDescriptor, parse_connection_string
from erasehub.services.private_cloud.migration import MigrationEngine, MigrationReport
from erasehub.services.private_cloud.routing import (
    TenantContextResolver,
    dispose_private_engine,
    open_store,
)
from erasehub.services.private_cloud.schema import SchemaValidationResult
from erasehub.services.private_cloud.tester import (
    ConnectionTestResult,
    probe_connection,
    require_connectivity,
)


logger = logging.getLogger(__name__)

COMPLETE_SETUP_STEPS = ("setup", "test_connection", "initialize_schema", "verify_routing")


class PrivateCloudService:
    """Caller-facing private cloud operations for one unit of work.

    Every operation names the tenant explicitly and commits the shared session
    itself; a failed step raises before anything is committed for it.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_config(self, tenant_email: str) -> PrivateStoreConfig | None:
        return await registry.get_config(self._session, tenant_email)

    def _check_kind_allowed(self, kind: StoreKind) -> None:
        allowed = get_settings().allowed_store_kinds()
        if kind.value not in allowed:
            raise InvalidDescriptorError(
                f"Store kind {kind.value} is not allowed; expected one of {', '.join(sorted(allowed))}"
            )

    async def setup(
        self,
        tenant_email: str,
        descriptor: StoreDescriptor,
        *,
        notes: str | None = None,
        selected_tables: Iterable[EntityKind] | None = None,
        created_by: str | None = None,
    ) -> tuple[PrivateStoreConfig, ConnectionTestResult]:
        tenant = await registry.require_tenant(self._session, tenant_email)
        registry.require_capability(tenant, TenantCapability.PRIVATE_CLOUD)
        self._check_kind_allowed(descriptor.kind)
        # Probe before persisting so an unreachable store never gets registered.
        probe = await require_connectivity(descriptor)
        row = await registry.upsert_config(
            self._session,
            tenant=tenant,
            descriptor=descriptor,
            notes=notes,
            selected_tables=selected_tables,
            created_by=created_by or tenant_email,
        )
        config = registry.to_read_model(row)
        await self._session.commit()
        await dispose_private_engine(tenant_email)
        logger.info("private_cloud_configured tenant=%s target=%s", tenant_email, descriptor.masked())
        return config, probe

    async def setup_from_connection_string(
        self,
        tenant_email: str,
        connection_string: str,
        *,
        kind: str | None = None,
        notes: str | None = None,
        selected_tables: Iterable[EntityKind] | None = None,
        created_by: str | None = None,
    ) -> tuple[PrivateStoreConfig, ConnectionTestResult]:
        descriptor = parse_connection_string(connection_string, kind)
        return await self.setup(
            tenant_email,
            descriptor,
            notes=notes,
            selected_tables=selected_tables,
            created_by=created_by,
        )

    async def test_connection(self, tenant_email: str) -> ConnectionTestResult:
        row = await registry.require_config_row(self._session, tenant_email)
        descriptor = registry.load_descriptor(row)
        result = await probe_connection(descriptor)
        current = registry.row_status(row)
        if result.success:
            status = current if current.at_least(ConfigStatus.CONNECTION_VERIFIED) else ConfigStatus.CONNECTION_VERIFIED
            await registry.set_status(
                self._session, row, status=status, test_status="success", tested_at=result.tested_at
            )
        else:
            # A failed probe only walks back an unconfirmed verification.
            status = ConfigStatus.CONFIGURED if current is ConfigStatus.CONNECTION_VERIFIED else current
            await registry.set_status(
                self._session, row, status=status, test_status="failed", tested_at=result.tested_at
            )
        await self._session.commit()
        return result

    async def initialize_schema(self, tenant_email: str) -> dict[str, Any]:
        row = await registry.require_config_row(self._session, tenant_email)
        descriptor = registry.load_descriptor(row)
        await require_connectivity(descriptor)
        current = registry.row_status(row)
        if not current.at_least(ConfigStatus.CONNECTION_VERIFIED):
            current = ConfigStatus.CONNECTION_VERIFIED
            await registry.set_status(self._session, row, status=current, test_status="success")
            await self._session.commit()
        tables = await schema.ensure_schema(descriptor)
        status = current if current.at_least(ConfigStatus.SCHEMA_READY) else ConfigStatus.SCHEMA_READY
        await registry.set_status(self._session, row, status=status, schema_initialized=True)
        config = registry.to_read_model(row)
        await self._session.commit()
        return {"tables": tables, "config": config.to_dict()}

    async def validate_schema(self, tenant_email: str) -> SchemaValidationResult:
        row = await registry.require_config_row(self._session, tenant_email)
        return await schema.validate_schema(registry.load_descriptor(row))

    async def activate_routing(self, tenant_email: str) -> PrivateStoreConfig:
        row = await registry.require_config_row(self._session, tenant_email)
        if not registry.row_status(row).at_least(ConfigStatus.SCHEMA_READY):
            raise ConfigurationError("Initialize the private store schema before activating routing")
        validation = await schema.validate_schema(registry.load_descriptor(row))
        if not validation.is_valid:
            raise SchemaError(validation.message)
        await registry.set_status(self._session, row, status=ConfigStatus.ROUTING_ACTIVE)
        config = registry.to_read_model(row)
        await self._session.commit()
        await dispose_private_engine(tenant_email)
        logger.info("private_cloud_routing_active tenant=%s", tenant_email)
        return config

    async def complete_setup(
        self,
        tenant_email: str,
        descriptor: StoreDescriptor,
        *,
        notes: str | None = None,
        selected_tables: Iterable[EntityKind] | None = None,
        created_by: str | None = None,
    ) -> dict[str, Any]:
        steps: dict[str, dict[str, Any]] = {
            name: {"status": "skipped", "message": None} for name in COMPLETE_SETUP_STEPS
        }
        failed_step: str | None = None

        async def _run_step(name: str, action) -> Any:  # type: ignore[no-untyped-def]
            nonlocal failed_step
            if failed_step is not None:
                return None
            try:
                outcome = await action()
            except ErasehubError as exc:
                await self._session.rollback()
                failed_step = name
                steps[name] = {"status": "failed", "message": str(exc), "error_type": type(exc).__name__}
                logger.warning("private_cloud_setup_step_failed tenant=%s step=%s", tenant_email, name)
                return None
            steps[name] = {"status": "success", "message": None}
            return outcome

        await _run_step(
            "setup",
            lambda: self.setup(
                tenant_email,
                descriptor,
                notes=notes,
                selected_tables=selected_tables,
                created_by=created_by,
            ),
        )

        async def _test() -> ConnectionTestResult:
            result = await self.test_connection(tenant_email)
            if not result.success:
                raise ConnectivityError(f"Cannot connect to private store: {result.error}")
            return result

        await _run_step("test_connection", _test)
        await _run_step("initialize_schema", lambda: self.initialize_schema(tenant_email))

        async def _verify() -> dict[str, Any]:
            await self.activate_routing(tenant_email)
            routing = await self.test_routing(tenant_email)
            if not (routing["is_private"] and routing["can_connect"]):
                raise ConnectivityError("Routing did not resolve to the private store")
            return routing

        await _run_step("verify_routing", _verify)

        config = await self.get_config(tenant_email)
        if failed_step is None:
            message = "Private cloud setup completed"
        else:
            message = f"Setup stopped at step '{failed_step}': {steps[failed_step]['message']}"
        return {
            "success": failed_step is None,
            "failed_step": failed_step,
            "message": message,
            "steps": steps,
            "config": config.to_dict() if config is not None else None,
        }

    async def test_routing(self, tenant_email: str) -> dict[str, Any]:
        resolver = TenantContextResolver(self._session)
        decision = await resolver.resolve_tenant(tenant_email)
        payload: dict[str, Any] = {
            "user_email": tenant_email,
            "is_private": decision.is_private,
            "database": decision.database_label,
            "can_connect": False,
            "statistics": None,
            "error": None,
        }
        try:
            async with open_store(decision, shared_session=self._session) as store:
                payload["statistics"] = await tenant_statistics(store, tenant_email)
            payload["can_connect"] = True
        except (SQLAlchemyError, OSError) as exc:
            error = str(getattr(exc, "orig", None) or exc)
            if decision.descriptor is not None:
                error = decision.descriptor.scrub(error)
            payload["error"] = error
            logger.warning("private_cloud_routing_check_failed tenant=%s", tenant_email)
        return payload

    async def check_access(self, tenant_email: str) -> dict[str, Any]:
        tenant = await registry.require_tenant(self._session, tenant_email)
        capabilities = registry.tenant_capabilities(tenant)
        config = await registry.get_config(self._session, tenant_email)
        return {
            "user_email": tenant_email,
            "has_private_cloud": TenantCapability.PRIVATE_CLOUD in capabilities,
            "has_private_api": TenantCapability.PRIVATE_API in capabilities,
            "is_configured": config is not None,
            "status": config.status.value if config else ConfigStatus.NOT_CONFIGURED.value,
            "routing_active": bool(config and config.status is ConfigStatus.ROUTING_ACTIVE),
        }

    async def migrate_primary_tables(self, tenant_email: str) -> MigrationReport:
        return await MigrationEngine(self._session).migrate_primary_tables(tenant_email)

    async def migrate_all_tables(self, tenant_email: str) -> MigrationReport:
        return await MigrationEngine(self._session).migrate_all_tables(tenant_email)

    async def delete_config(self, tenant_email: str) -> bool:
        deleted = await registry.soft_delete_config(self._session, tenant_email)
        await self._session.commit()
        if deleted:
            await dispose_private_engine(tenant_email)
            logger.info("private_cloud_config_deleted tenant=%s", tenant_email)
        return deleted

    @staticmethod
    def list_required_tables() -> list[str]:
        return schema.list_required_tables()


async def tenant_statistics(store: AsyncSession, tenant_email: str) -> dict[str, int]:
    reports = await store.execute(
        select(func.count()).select_from(AuditReport).where(AuditReport.client_email == tenant_email)
    )
    subusers = await store.execute(
        select(func.count()).select_from(Subuser).where(Subuser.user_email == tenant_email)
    )
    machines = await store.execute(
        select(func.count()).select_from(Machine).where(Machine.user_email == tenant_email)
    )
    return {
        "audit_reports": int(reports.scalar() or 0),
        "subusers": int(subusers.scalar() or 0),
        "machines": int(machines.scalar() or 0),
    }
