from __future__ import annotations

import pytest

from erasehub.apps.api.errors import domain_http_error
from erasehub.core.errors import (
    ConfigNotFoundError,
    ConfigurationError,
    ConnectivityError,
    ErasehubError,
    FatalMigrationError,
    FeatureNotEnabledError,
    InvalidDescriptorError,
    MigrationInProgressError,
    MigrationTimeoutError,
    SchemaError,
    TenantNotFoundError,
)


@pytest.mark.parametrize(
    ("error", "status_code", "code"),
    [
        (FeatureNotEnabledError("no capability"), 403, "FEATURE_NOT_ENABLED"),
        (ConfigNotFoundError("missing"), 404, "CONFIG_NOT_FOUND"),
        (InvalidDescriptorError("bad host"), 400, "INVALID_DESCRIPTOR"),
        (ConfigurationError("no key"), 400, "INVALID_CONFIGURATION"),
        (TenantNotFoundError("who"), 404, "TENANT_NOT_FOUND"),
        (ConnectivityError("refused"), 502, "CONNECTIVITY_FAILED"),
        (SchemaError("ddl"), 502, "SCHEMA_FAILED"),
        (FatalMigrationError("preflight"), 409, "MIGRATION_FATAL"),
        (MigrationInProgressError("busy"), 409, "MIGRATION_IN_PROGRESS"),
        (MigrationTimeoutError("slow"), 504, "MIGRATION_TIMEOUT"),
    ],
)
def test_domain_errors_map_to_stable_codes(error: ErasehubError, status_code: int, code: str) -> None:
    exc = domain_http_error(error)
    assert exc.status_code == status_code
    assert exc.detail == {"code": code, "message": str(error)}


def test_unknown_domain_error_hides_message() -> None:
    exc = domain_http_error(ErasehubError("password=hunter2"))
    assert exc.status_code == 500
    assert "hunter2" not in str(exc.detail)
