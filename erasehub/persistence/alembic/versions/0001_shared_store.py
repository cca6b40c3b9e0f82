"""shared store

Revision ID: 0001_shared_store
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_shared_store"
down_revision = None
branch_labels = None
depends_on = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    # Tables are created in the same dependency order private stores use.
    op.create_table(
        "roles",
        sa.Column("role_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("role_name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("hierarchy_level", sa.Integer(), nullable=False),
        _created_at(),
    )
    op.create_table(
        "permissions",
        sa.Column("permission_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("permission_name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.String(500), nullable=False),
        _created_at(),
    )
    op.create_table(
        "role_permissions",
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.role_id"), primary_key=True),
        sa.Column(
            "permission_id", sa.Integer(), sa.ForeignKey("permissions.permission_id"), primary_key=True
        ),
    )
    op.create_table(
        "routes",
        sa.Column("route_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("route_path", sa.String(500), nullable=False),
        sa.Column("http_method", sa.String(10), nullable=False),
        sa.Column("description", sa.String(200), nullable=False),
        _created_at(),
    )
    op.create_index("ix_routes_route_path", "routes", ["route_path"])

    op.create_table(
        "users",
        sa.Column("user_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_name", sa.String(255), nullable=False),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column("phone_number", sa.String(20), nullable=True),
        sa.Column("department", sa.String(100), nullable=True),
        sa.Column("user_role", sa.String(50), nullable=True),
        sa.Column("license_allocation", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("timezone", sa.String(100), nullable=True),
        sa.Column("is_private_cloud", sa.Boolean(), nullable=False),
        sa.Column("private_api", sa.Boolean(), nullable=False),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _created_at("updated_at"),
    )
    op.create_index("ix_users_user_email", "users", ["user_email"], unique=True)

    op.create_table(
        "subusers",
        sa.Column("subuser_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("subuser_email", sa.String(255), nullable=False),
        sa.Column("subuser_password", sa.String(255), nullable=False),
        sa.Column("subuser_username", sa.String(100), nullable=True),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column("superuser_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column("department", sa.String(100), nullable=True),
        sa.Column("role", sa.String(50), nullable=False),
        sa.Column("permissions_json", _json(), nullable=True),
        sa.Column("max_machines", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=True),
        _created_at(),
        _created_at("updated_at"),
    )
    op.create_index("ix_subusers_subuser_email", "subusers", ["subuser_email"], unique=True)
    op.create_index("ix_subusers_user_email", "subusers", ["user_email"])
    op.create_index("ix_subusers_superuser_id", "subusers", ["superuser_id"])

    op.create_table(
        "machines",
        sa.Column("fingerprint_hash", sa.String(255), primary_key=True),
        sa.Column("mac_address", sa.String(255), nullable=False),
        sa.Column("physical_drive_id", sa.String(255), nullable=True),
        sa.Column("cpu_id", sa.String(255), nullable=True),
        sa.Column("bios_serial", sa.String(255), nullable=True),
        sa.Column("os_version", sa.String(255), nullable=True),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("subuser_email", sa.String(255), nullable=True),
        sa.Column("license_details_json", _json(), nullable=True),
        sa.Column("machine_details_json", _json(), nullable=True),
        sa.Column("license_activated", sa.Boolean(), nullable=False),
        sa.Column("license_days_valid", sa.Integer(), nullable=False),
        _created_at(),
        _created_at("updated_at"),
    )
    op.create_index("ix_machines_mac_address", "machines", ["mac_address"])
    op.create_index("ix_machines_user_email", "machines", ["user_email"])
    op.create_index("ix_machines_subuser_email", "machines", ["subuser_email"])

    op.create_table(
        "audit_reports",
        sa.Column("report_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("client_email", sa.String(255), nullable=False),
        sa.Column("report_name", sa.String(255), nullable=False),
        sa.Column("erasure_method", sa.String(255), nullable=False),
        _created_at("report_datetime"),
        sa.Column("report_details_json", _json(), nullable=True),
        sa.Column("synced", sa.Boolean(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_audit_reports_client_email", "audit_reports", ["client_email"])

    op.create_table(
        "sessions",
        sa.Column("session_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("device_info", sa.String(1000), nullable=True),
        sa.Column("session_status", sa.String(50), nullable=False),
        _created_at("login_time"),
        sa.Column("logout_time", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sessions_user_email", "sessions", ["user_email"])

    op.create_table(
        "commands",
        sa.Column("command_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("command_text", sa.String(2000), nullable=False),
        sa.Column("command_json", _json(), nullable=True),
        sa.Column("command_status", sa.String(100), nullable=False),
        _created_at("issued_at"),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_commands_user_email", "commands", ["user_email"])

    op.create_table(
        "logs",
        sa.Column("log_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("log_level", sa.String(50), nullable=False),
        sa.Column("log_message", sa.String(2000), nullable=False),
        sa.Column("log_details_json", _json(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_logs_user_email", "logs", ["user_email"])

    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.user_id"), primary_key=True),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.role_id"), primary_key=True),
        _created_at("assigned_at"),
        sa.Column("assigned_by_email", sa.String(255), nullable=False),
    )
    op.create_table(
        "subuser_roles",
        sa.Column("subuser_id", sa.Integer(), sa.ForeignKey("subusers.subuser_id"), primary_key=True),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.role_id"), primary_key=True),
        _created_at("assigned_at"),
        sa.Column("assigned_by_email", sa.String(255), nullable=False),
    )

    # Shared-store only: tenant registrations and API credentials.
    op.create_table(
        "private_cloud_databases",
        sa.Column("config_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("user_email", sa.String(255), nullable=False, unique=True),
        sa.Column("connection_string", sa.Text(), nullable=False),
        sa.Column("database_type", sa.String(50), nullable=False),
        sa.Column("server_host", sa.String(255), nullable=True),
        sa.Column("server_port", sa.Integer(), nullable=True),
        sa.Column("database_name", sa.String(255), nullable=True),
        sa.Column("database_username", sa.String(255), nullable=True),
        sa.Column("selected_tables", _json(), nullable=True),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("test_status", sa.String(50), nullable=True),
        sa.Column("last_tested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("schema_initialized", sa.Boolean(), nullable=False),
        sa.Column("schema_initialized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
        _created_at(),
        _created_at("updated_at"),
    )
    op.create_index("ix_private_cloud_databases_user_id", "private_cloud_databases", ["user_id"])
    op.create_index(
        "ix_private_cloud_databases_active", "private_cloud_databases", ["user_email", "is_active"]
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("subject_email", sa.String(255), nullable=False),
        sa.Column("key_prefix", sa.String(32), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_api_keys_subject_email", "api_keys", ["subject_email"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)


def downgrade() -> None:
    op.drop_table("api_keys")
    op.drop_table("private_cloud_databases")
    for table in (
        "subuser_roles",
        "user_roles",
        "logs",
        "commands",
        "sessions",
        "audit_reports",
        "machines",
        "subusers",
        "users",
        "routes",
        "role_permissions",
        "permissions",
        "roles",
    ):
        op.drop_table(table)
