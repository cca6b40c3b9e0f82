from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable


MASKED_DESCRIPTOR = "***ENCRYPTED***"


class TenantCapability(str, Enum):
    # Closed set of per-tenant feature switches stored as flags on the tenant row.
    PRIVATE_CLOUD = "private_cloud"
    PRIVATE_API = "private_api"


class StoreKind(str, Enum):
    MYSQL = "mysql"
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"

    @classmethod
    def parse(cls, value: str) -> "StoreKind":
        normalized = value.strip().lower()
        if normalized in {"postgres", "pgsql"}:
            normalized = cls.POSTGRESQL.value
        if normalized == "mariadb":
            normalized = cls.MYSQL.value
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"Unsupported store kind: {value}") from exc


class ConfigStatus(str, Enum):
    NOT_CONFIGURED = "not_configured"
    CONFIGURED = "configured"
    CONNECTION_VERIFIED = "connection_verified"
    SCHEMA_READY = "schema_ready"
    ROUTING_ACTIVE = "routing_active"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def at_least(self, other: "ConfigStatus") -> bool:
        return self.rank >= other.rank


_STATUS_ORDER = [
    ConfigStatus.NOT_CONFIGURED,
    ConfigStatus.CONFIGURED,
    ConfigStatus.CONNECTION_VERIFIED,
    ConfigStatus.SCHEMA_READY,
    ConfigStatus.ROUTING_ACTIVE,
]


class KindClass(str, Enum):
    REFERENCE = "reference"
    TENANT_SCOPED = "tenant_scoped"
    LINKING = "linking"


class EntityKind(str, Enum):
    """Entity kinds copied into a private store, declared in dependency order."""

    ROLES = "Roles"
    PERMISSIONS = "Permissions"
    ROLE_PERMISSIONS = "RolePermissions"
    ROUTES = "Routes"
    USERS = "Users"
    SUBUSERS = "Subusers"
    MACHINES = "Machines"
    AUDIT_REPORTS = "AuditReports"
    SESSIONS = "Sessions"
    COMMANDS = "Commands"
    LOGS = "Logs"
    USER_ROLES = "UserRoles"
    SUBUSER_ROLES = "SubuserRoles"

    @property
    def kind_class(self) -> KindClass:
        return _KIND_CLASSES[self]

    @property
    def table_name(self) -> str:
        return _KIND_TABLES[self]

    @classmethod
    def parse(cls, value: str) -> "EntityKind":
        # Accept kind names ("AuditReports") and table names ("audit_reports") alike.
        key = value.strip()
        for kind in cls:
            if key == kind.value or key.lower() == kind.table_name or key.lower() == kind.value.lower():
                return kind
        raise ValueError(f"Unknown table: {value}")


_KIND_CLASSES: dict[EntityKind, KindClass] = {
    EntityKind.ROLES: KindClass.REFERENCE,
    EntityKind.PERMISSIONS: KindClass.REFERENCE,
    EntityKind.ROLE_PERMISSIONS: KindClass.REFERENCE,
    EntityKind.ROUTES: KindClass.REFERENCE,
    EntityKind.USERS: KindClass.TENANT_SCOPED,
    EntityKind.SUBUSERS: KindClass.TENANT_SCOPED,
    EntityKind.MACHINES: KindClass.TENANT_SCOPED,
    EntityKind.AUDIT_REPORTS: KindClass.TENANT_SCOPED,
    EntityKind.SESSIONS: KindClass.TENANT_SCOPED,
    EntityKind.COMMANDS: KindClass.TENANT_SCOPED,
    EntityKind.LOGS: KindClass.TENANT_SCOPED,
    EntityKind.USER_ROLES: KindClass.LINKING,
    EntityKind.SUBUSER_ROLES: KindClass.LINKING,
}

_KIND_TABLES: dict[EntityKind, str] = {
    EntityKind.ROLES: "roles",
    EntityKind.PERMISSIONS: "permissions",
    EntityKind.ROLE_PERMISSIONS: "role_permissions",
    EntityKind.ROUTES: "routes",
    EntityKind.USERS: "users",
    EntityKind.SUBUSERS: "subusers",
    EntityKind.MACHINES: "machines",
    EntityKind.AUDIT_REPORTS: "audit_reports",
    EntityKind.SESSIONS: "sessions",
    EntityKind.COMMANDS: "commands",
    EntityKind.LOGS: "logs",
    EntityKind.USER_ROLES: "user_roles",
    EntityKind.SUBUSER_ROLES: "subuser_roles",
}

ALL_KINDS: tuple[EntityKind, ...] = tuple(EntityKind)

# The lighter migration covers the tenant record and the kinds tenants use daily.
PRIMARY_KINDS: tuple[EntityKind, ...] = (
    EntityKind.USERS,
    EntityKind.SUBUSERS,
    EntityKind.MACHINES,
    EntityKind.AUDIT_REPORTS,
)


def ordered_kinds(kinds: Iterable[EntityKind]) -> list[EntityKind]:
    wanted = set(kinds)
    return [kind for kind in ALL_KINDS if kind in wanted]


def parse_selected_tables(value: Any) -> frozenset[EntityKind] | None:
    """Normalize a table selection into a set of entity kinds.

    Accepts a list of names or a mapping of name -> bool (the legacy JSON shape,
    e.g. ``{"AuditReports": true, "machines": false}``). ``None`` means no
    selection was made and every kind is migrated.
    """
    if value is None:
        return None
    if isinstance(value, dict):
        names = [str(key) for key, enabled in value.items() if bool(enabled)]
    elif isinstance(value, (list, tuple, set, frozenset)):
        names = [str(item) for item in value]
    else:
        raise ValueError("selected_tables must be a list or an object of booleans")
    return frozenset(EntityKind.parse(name) for name in names)


@dataclass(frozen=True)
class PrivateStoreConfig:
    # Read model of a tenant's private store registration; never carries secrets.
    config_id: int
    tenant_email: str
    user_id: int
    store_kind: StoreKind
    server_host: str | None
    server_port: int | None
    database_name: str | None
    database_username: str | None
    status: ConfigStatus
    is_active: bool
    schema_initialized: bool
    test_status: str | None
    last_tested_at: datetime | None
    schema_initialized_at: datetime | None
    notes: str | None
    selected_tables: frozenset[EntityKind] | None
    created_at: datetime | None
    updated_at: datetime | None
    connection_string: str = field(default=MASKED_DESCRIPTOR)

    def to_dict(self) -> dict[str, Any]:
        return {
            "config_id": self.config_id,
            "user_email": self.tenant_email,
            "user_id": self.user_id,
            "database_type": self.store_kind.value,
            "server_host": self.server_host,
            "server_port": self.server_port,
            "database_name": self.database_name,
            "database_username": self.database_username,
            "connection_string": self.connection_string,
            "status": self.status.value,
            "is_active": self.is_active,
            "schema_initialized": self.schema_initialized,
            "test_status": self.test_status,
            "last_tested_at": _iso(self.last_tested_at),
            "schema_initialized_at": _iso(self.schema_initialized_at),
            "notes": self.notes,
            "selected_tables": (
                None
                if self.selected_tables is None
                else [kind.value for kind in ordered_kinds(self.selected_tables)]
            ),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
