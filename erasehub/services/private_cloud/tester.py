from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from erasehub.core.config import get_settings
from erasehub.core.errors import ConnectivityError
from erasehub.domain.private_cloud import ALL_KINDS
from erasehub.persistence.db import build_engine
from erasehub.services.private_cloud.descriptors import StoreDescriptor
from erasehub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    tested_at: datetime
    error: str | None = None
    response_time_ms: int = 0
    server_version: str | None = None
    schema_exists: bool = False
    existing_tables: list[str] = field(default_factory=list)
    missing_tables: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "tested_at": self.tested_at.isoformat(),
            "response_time_ms": self.response_time_ms,
            "server_version": self.server_version,
            "schema_exists": self.schema_exists,
            "missing_tables": list(self.missing_tables),
        }


def required_table_names() -> list[str]:
    return [kind.table_name for kind in ALL_KINDS]


def engine_for_probe(descriptor: StoreDescriptor) -> AsyncEngine:
    # Probes use the production URL and connect arguments but never a pooled connection.
    settings = get_settings()
    return build_engine(
        descriptor.to_url(),
        connect_args=descriptor.connect_args(
            connect_timeout_s=settings.private_store_connect_timeout_s,
            command_timeout_s=settings.private_store_command_timeout_s,
        ),
        pooled=False,
    )


def _list_tables(sync_conn) -> list[str]:  # type: ignore[no-untyped-def]
    return list(inspect(sync_conn).get_table_names())


def _format_version(version_info: Any) -> str | None:
    if not version_info:
        return None
    return ".".join(str(part) for part in version_info)


async def _probe(descriptor: StoreDescriptor) -> tuple[str | None, list[str]]:
    engine = engine_for_probe(descriptor)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            version = _format_version(getattr(conn.dialect, "server_version_info", None))
            tables = await conn.run_sync(_list_tables)
        return version, tables
    finally:
        await engine.dispose()


async def probe_connection(descriptor: StoreDescriptor) -> ConnectionTestResult:
    """Open a connection, ping it and report which required tables already exist.

    Never raises for store-side failures; the outcome is carried by ``success``.
    """
    settings = get_settings()
    started = time.monotonic()
    tested_at = datetime.now(timezone.utc)
    try:
        version, tables = await asyncio.wait_for(
            _probe(descriptor), timeout=settings.private_store_connect_timeout_s
        )
    except asyncio.TimeoutError:
        increment_counter("private_store_probe_failures_total")
        logger.warning("private_store_probe_timeout target=%s", descriptor.masked())
        return ConnectionTestResult(
            success=False,
            message="Connection failed",
            error=f"Timed out after {settings.private_store_connect_timeout_s:g}s",
            tested_at=tested_at,
            response_time_ms=int((time.monotonic() - started) * 1000),
        )
    except (SQLAlchemyError, OSError) as exc:
        increment_counter("private_store_probe_failures_total")
        error = descriptor.scrub(str(getattr(exc, "orig", None) or exc))
        logger.warning("private_store_probe_failed target=%s error=%s", descriptor.masked(), error)
        return ConnectionTestResult(
            success=False,
            message="Connection failed",
            error=error,
            tested_at=tested_at,
            response_time_ms=int((time.monotonic() - started) * 1000),
        )

    existing = {name.lower() for name in tables}
    required = required_table_names()
    missing = [name for name in required if name not in existing]
    return ConnectionTestResult(
        success=True,
        message="Connection successful",
        tested_at=tested_at,
        response_time_ms=int((time.monotonic() - started) * 1000),
        server_version=version,
        schema_exists=not missing,
        existing_tables=[name for name in required if name in existing],
        missing_tables=missing,
    )


async def require_connectivity(descriptor: StoreDescriptor) -> ConnectionTestResult:
    result = await probe_connection(descriptor)
    if not result.success:
        raise ConnectivityError(f"Cannot connect to private store: {result.error}")
    return result
