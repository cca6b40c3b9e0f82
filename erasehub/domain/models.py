from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Private stores may be MySQL or SQLite, so JSON columns only specialize on Postgres.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    # Primary tenant record; integer ids are preserved when copied to a private store.
    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_name: Mapped[str] = mapped_column(String(255))
    user_email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    license_allocation: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="active", nullable=False)
    timezone: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Capability flags; read once per request through tenant_capabilities().
    is_private_cloud: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    private_api: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Subuser(Base):
    __tablename__ = "subusers"

    # Restricted accounts managed by a primary tenant identity.
    subuser_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subuser_email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    subuser_password: Mapped[str] = mapped_column(String(255))
    subuser_username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Owning tenant email; ownership filtering keys off this column.
    user_email: Mapped[str] = mapped_column(String(255), index=True)
    superuser_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    role: Mapped[str] = mapped_column(String(50), default="subuser", nullable=False)
    permissions_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    max_machines: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="active", nullable=False)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Machine(Base):
    __tablename__ = "machines"

    # Machines are keyed by their hardware fingerprint rather than a surrogate id.
    fingerprint_hash: Mapped[str] = mapped_column(String(255), primary_key=True)
    mac_address: Mapped[str] = mapped_column(String(255), index=True)
    physical_drive_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cpu_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bios_serial: Mapped[str | None] = mapped_column(String(255), nullable=True)
    os_version: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    subuser_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    license_details_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    machine_details_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    license_activated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    license_days_valid: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditReport(Base):
    __tablename__ = "audit_reports"

    # Erasure certificates produced by client machines.
    report_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_email: Mapped[str] = mapped_column(String(255), index=True)
    report_name: Mapped[str] = mapped_column(String(255))
    erasure_method: Mapped[str] = mapped_column(String(255))
    report_datetime: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    report_details_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    synced: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserSession(Base):
    __tablename__ = "sessions"

    session_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_email: Mapped[str] = mapped_column(String(255), index=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    device_info: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    session_status: Mapped[str] = mapped_column(String(50), default="active", nullable=False)
    login_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    logout_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Command(Base):
    __tablename__ = "commands"

    command_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    command_text: Mapped[str] = mapped_column(String(2000))
    command_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    command_status: Mapped[str] = mapped_column(String(100), default="pending", nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ActivityLog(Base):
    __tablename__ = "logs"

    log_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    log_level: Mapped[str] = mapped_column(String(50))
    log_message: Mapped[str] = mapped_column(String(2000))
    log_details_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Role(Base):
    __tablename__ = "roles"

    role_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    role_name: Mapped[str] = mapped_column(String(100), unique=True)
    description: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    hierarchy_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Permission(Base):
    __tablename__ = "permissions"

    permission_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    permission_name: Mapped[str] = mapped_column(String(100), unique=True)
    description: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RolePermission(Base):
    __tablename__ = "role_permissions"

    role_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("roles.role_id"), primary_key=True, autoincrement=False
    )
    permission_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("permissions.permission_id"), primary_key=True, autoincrement=False
    )


class Route(Base):
    __tablename__ = "routes"

    route_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    route_path: Mapped[str] = mapped_column(String(500), index=True)
    http_method: Mapped[str] = mapped_column(String(10))
    description: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserRole(Base):
    __tablename__ = "user_roles"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.user_id"), primary_key=True, autoincrement=False
    )
    role_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("roles.role_id"), primary_key=True, autoincrement=False
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    assigned_by_email: Mapped[str] = mapped_column(String(255), default="system", nullable=False)


class SubuserRole(Base):
    __tablename__ = "subuser_roles"

    subuser_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("subusers.subuser_id"), primary_key=True, autoincrement=False
    )
    role_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("roles.role_id"), primary_key=True, autoincrement=False
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    assigned_by_email: Mapped[str] = mapped_column(String(255), default="system", nullable=False)


class PrivateCloudDatabase(Base):
    __tablename__ = "private_cloud_databases"
    __table_args__ = (
        Index("ix_private_cloud_databases_active", "user_email", "is_active"),
    )

    # Shared-store registry row; one per tenant, replaced in place on re-setup.
    config_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    user_email: Mapped[str] = mapped_column(String(255), unique=True)
    # Fernet token of the full descriptor; never returned to callers.
    connection_string: Mapped[str] = mapped_column(Text)
    database_type: Mapped[str] = mapped_column(String(50), default="mysql", nullable=False)
    server_host: Mapped[str | None] = mapped_column(String(255), nullable=True)
    server_port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    database_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    database_username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    selected_tables: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="configured", nullable=False)
    test_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_tested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    schema_initialized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    schema_initialized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Tenant or subuser email the key authenticates as.
    subject_email: Mapped[str] = mapped_column(String(255), index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String(32))
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
