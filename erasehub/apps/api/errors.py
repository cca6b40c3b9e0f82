from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from erasehub.apps.api.response import error_response
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


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
    504: "GATEWAY_TIMEOUT",
}

# Most specific classes first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[ErasehubError], int, str], ...] = (
    (FeatureNotEnabledError, 403, "FEATURE_NOT_ENABLED"),
    (ConfigNotFoundError, 404, "CONFIG_NOT_FOUND"),
    (InvalidDescriptorError, 400, "INVALID_DESCRIPTOR"),
    (TenantNotFoundError, 404, "TENANT_NOT_FOUND"),
    (ConnectivityError, 502, "CONNECTIVITY_FAILED"),
    (SchemaError, 502, "SCHEMA_FAILED"),
    (FatalMigrationError, 409, "MIGRATION_FATAL"),
    (MigrationInProgressError, 409, "MIGRATION_IN_PROGRESS"),
    (MigrationTimeoutError, 504, "MIGRATION_TIMEOUT"),
    (ConfigurationError, 400, "INVALID_CONFIGURATION"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def domain_http_error(exc: ErasehubError) -> HTTPException:
    """Translate a domain error into an HTTPException with a stable code."""
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"code": code, "message": str(exc)})
    return HTTPException(status_code=500, detail={"code": "INTERNAL_ERROR", "message": "Internal server error"})


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Routing errors (unknown path, wrong method) get the same envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def domain_exception_handler(request: Request, exc: ErasehubError) -> JSONResponse:
    return await http_exception_handler(request, domain_http_error(exc))


_PUBLIC_ERROR_KEYS = ("type", "loc", "msg")


def _public_error(err: dict) -> dict:
    return {key: err[key] for key in _PUBLIC_ERROR_KEYS if key in err}


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        # Only type, loc and msg; "input" echoes the submitted body, credentials included.
        details={"errors": jsonable_encoder([_public_error(err) for err in exc.errors()])},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never echo exception text; it may carry connection details.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
