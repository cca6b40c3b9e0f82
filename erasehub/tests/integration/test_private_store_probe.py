from __future__ import annotations

import pytest

from erasehub.core.errors import ConnectivityError
from erasehub.services import telemetry
from erasehub.services.private_cloud.schema import ensure_schema, list_required_tables, validate_schema
from erasehub.services.private_cloud.tester import probe_connection, require_connectivity
from erasehub.tests.utils.stores import sqlite_descriptor


@pytest.mark.asyncio
async def test_probe_reports_missing_tables_on_empty_store(tmp_path) -> None:
    result = await probe_connection(sqlite_descriptor(tmp_path / "tenant.db"))
    assert result.success is True
    assert result.schema_exists is False
    assert result.missing_tables == list_required_tables()
    assert result.server_version
    assert result.to_dict()["message"] == "Connection successful"


@pytest.mark.asyncio
async def test_probe_failure_is_reported_not_raised(tmp_path) -> None:
    descriptor = sqlite_descriptor(tmp_path / "missing-dir" / "tenant.db")
    result = await probe_connection(descriptor)
    assert result.success is False
    assert result.error
    assert telemetry.counters_snapshot()["private_store_probe_failures_total"] == 1

    with pytest.raises(ConnectivityError):
        await require_connectivity(descriptor)


@pytest.mark.asyncio
async def test_ensure_schema_is_idempotent_and_validates(tmp_path) -> None:
    descriptor = sqlite_descriptor(tmp_path / "tenant.db")
    assert (await validate_schema(descriptor)).is_valid is False

    tables = await ensure_schema(descriptor)
    assert tables == list_required_tables()
    # Second run leaves existing tables alone.
    await ensure_schema(descriptor)

    validation = await validate_schema(descriptor)
    assert validation.is_valid is True
    assert validation.missing_tables == []
    assert set(validation.existing_tables) == set(list_required_tables())

    probe = await probe_connection(descriptor)
    assert probe.schema_exists is True


@pytest.mark.asyncio
async def test_validate_schema_on_unreachable_store(tmp_path) -> None:
    validation = await validate_schema(sqlite_descriptor(tmp_path / "nope" / "tenant.db"))
    assert validation.is_valid is False
    assert validation.missing_tables == list_required_tables()
    assert validation.message.startswith("Cannot validate schema")
