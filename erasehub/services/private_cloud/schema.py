from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy import Table
from sqlalchemy.exc import SQLAlchemyError

from erasehub.core.config import get_settings
from erasehub.core.errors import SchemaError
from erasehub.domain.models import Base
from erasehub.domain.private_cloud import ALL_KINDS
from erasehub.services.private_cloud.descriptors import StoreDescriptor
from erasehub.services.private_cloud.tester import engine_for_probe, probe_connection


logger = logging.getLogger(__name__)


@dataclass
class SchemaValidationResult:
    is_valid: bool
    message: str
    existing_tables: list[str] = field(default_factory=list)
    missing_tables: list[str] = field(default_factory=list)
    required_tables: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "message": self.message,
            "existing_tables": list(self.existing_tables),
            "missing_tables": list(self.missing_tables),
            "required_tables": list(self.required_tables),
        }


def list_required_tables() -> list[str]:
    """Table names a private store must hold, in creation order."""
    return [kind.table_name for kind in ALL_KINDS]


def private_store_tables() -> list[Table]:
    # Registry and credential tables stay in the shared store only.
    return [Base.metadata.tables[name] for name in list_required_tables()]


async def ensure_schema(descriptor: StoreDescriptor) -> list[str]:
    """Create any missing private-store tables and return the required table list.

    Existing tables are left as they are, so running this twice is harmless.
    """
    settings = get_settings()
    engine = engine_for_probe(descriptor)

    async def _create() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, tables=private_store_tables(), checkfirst=True)

    try:
        # DDL on a large store can outlast the probe bound; allow the per-statement budget too.
        await asyncio.wait_for(
            _create(),
            timeout=settings.private_store_connect_timeout_s + settings.private_store_command_timeout_s,
        )
    except asyncio.TimeoutError as exc:
        logger.warning("private_store_schema_timeout target=%s", descriptor.masked())
        raise SchemaError("Timed out while creating private store tables") from exc
    except (SQLAlchemyError, OSError) as exc:
        error = descriptor.scrub(str(getattr(exc, "orig", None) or exc))
        logger.warning("private_store_schema_failed target=%s error=%s", descriptor.masked(), error)
        raise SchemaError(f"Failed to create private store tables: {error}") from exc
    finally:
        await engine.dispose()
    logger.info("private_store_schema_ready target=%s", descriptor.masked())
    return list_required_tables()


async def validate_schema(descriptor: StoreDescriptor) -> SchemaValidationResult:
    required = list_required_tables()
    result = await probe_connection(descriptor)
    if not result.success:
        return SchemaValidationResult(
            is_valid=False,
            message=f"Cannot validate schema: {result.error}",
            missing_tables=required,
            required_tables=required,
        )
    if result.missing_tables:
        message = f"Missing {len(result.missing_tables)} of {len(required)} required tables"
    else:
        message = "All required tables exist"
    return SchemaValidationResult(
        is_valid=not result.missing_tables,
        message=message,
        existing_tables=result.existing_tables,
        missing_tables=result.missing_tables,
        required_tables=required,
    )
