from __future__ import annotations


class ErasehubError(Exception):
    """Base error for erasehub."""


class ConfigurationError(ErasehubError):
    """Missing or invalid private cloud configuration."""


class FeatureNotEnabledError(ConfigurationError):
    """Tenant does not hold the capability required for the operation."""


class InvalidDescriptorError(ConfigurationError):
    """Connection descriptor could not be parsed or is not supported."""


class ConfigNotFoundError(ConfigurationError):
    """No active private store configuration exists for the tenant."""


class TenantNotFoundError(ErasehubError):
    """Tenant identity is unknown to the shared store."""


class ConnectivityError(ErasehubError):
    """Target store is unreachable or rejected the credentials."""


class SchemaError(ErasehubError):
    """Schema provisioning in the target store failed."""


class FatalMigrationError(ErasehubError):
    """Migration preflight failed; nothing was written to the target store."""


class MigrationInProgressError(ErasehubError):
    """Another migration for the same tenant is already running."""


class MigrationTimeoutError(ErasehubError):
    """Migration exceeded its time bound; committed batches are kept."""
