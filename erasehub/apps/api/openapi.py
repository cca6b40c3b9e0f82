from __future__ import annotations

from typing import Any

from erasehub.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
}

PRIVATE_CLOUD_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    400: _response("Invalid descriptor", "INVALID_DESCRIPTOR", "Server host is required"),
    403: _response(
        "Capability missing",
        "FEATURE_NOT_ENABLED",
        "Tenant a@x.com does not have the private_cloud capability",
    ),
    404: _response("No configuration", "CONFIG_NOT_FOUND", "No private cloud configuration for a@x.com"),
    409: _response(
        "Migration rejected",
        "MIGRATION_IN_PROGRESS",
        "A migration for a@x.com is already running",
    ),
    502: _response(
        "Private store unreachable",
        "CONNECTIVITY_FAILED",
        "Cannot connect to private store: Connection refused",
    ),
    504: _response(
        "Migration timed out",
        "MIGRATION_TIMEOUT",
        "Migration exceeded 900s; committed batches were kept",
    ),
}
