from __future__ import annotations

from typing import Any, Awaitable, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from erasehub.apps.api.deps import (
    Principal,
    get_current_principal,
    get_private_cloud_service,
    get_routed_db,
)
from erasehub.apps.api.errors import domain_http_error
from erasehub.apps.api.openapi import PRIVATE_CLOUD_ERROR_RESPONSES
from erasehub.apps.api.response import SuccessEnvelope, success_response
from erasehub.core.errors import ConfigurationError, ErasehubError
from erasehub.domain.private_cloud import EntityKind, PrivateStoreConfig, parse_selected_tables
from erasehub.services.private_cloud.descriptors import StoreDescriptor, build_descriptor
from erasehub.services.private_cloud.service import PrivateCloudService, tenant_statistics
from erasehub.services.private_cloud.tester import ConnectionTestResult


router = APIRouter(
    prefix="/private-cloud",
    tags=["private-cloud"],
    responses=PRIVATE_CLOUD_ERROR_RESPONSES,
)

T = TypeVar("T")

SelectedTables = list[str] | dict[str, bool] | None

SETUP_NEXT_STEP = "Initialize the schema using /v1/private-cloud/initialize-schema"


class SetupRequest(BaseModel):
    database_type: str = "mysql"
    server_host: str | None = None
    server_port: int | None = Field(default=None, ge=1, le=65535)
    database_name: str
    database_username: str | None = None
    database_password: str | None = None
    ssl_required: bool = False
    notes: str | None = Field(default=None, max_length=500)
    selected_tables: SelectedTables = None


class SetupSimpleRequest(BaseModel):
    connection_string: str = Field(min_length=1)
    database_type: str | None = None
    notes: str | None = Field(default=None, max_length=500)
    selected_tables: SelectedTables = None


async def _call(awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    except ErasehubError as exc:
        raise domain_http_error(exc) from exc


def _require_tenant_owner(principal: Principal) -> None:
    # Subusers may read their owner's setup but never change it.
    if principal.is_subuser:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Only the tenant owner can manage private cloud"},
        )


def _selection(value: SelectedTables) -> frozenset[EntityKind] | None:
    try:
        return parse_selected_tables(value)
    except ValueError as exc:
        raise domain_http_error(ConfigurationError(str(exc))) from exc


def _descriptor(payload: SetupRequest) -> StoreDescriptor:
    try:
        return build_descriptor(
            kind=payload.database_type,
            host=payload.server_host,
            port=payload.server_port,
            database=payload.database_name,
            username=payload.database_username,
            password=payload.database_password,
            ssl_required=payload.ssl_required,
        )
    except ErasehubError as exc:
        raise domain_http_error(exc) from exc


def _setup_response(request: Request, config: PrivateStoreConfig, probe: ConnectionTestResult) -> dict:
    # Setup only persists after a passing probe, so the schema step is next.
    return success_response(
        request=request,
        data={
            "success": probe.success,
            "next_step": SETUP_NEXT_STEP,
            "config": config.to_dict(),
            "test": probe.to_dict(),
        },
    )


@router.get("/config", response_model=SuccessEnvelope[dict[str, Any]])
async def get_config(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    config = await _call(service.get_config(principal.tenant_email))
    if config is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "CONFIG_NOT_FOUND", "message": "Private cloud is not configured"},
        )
    return success_response(request=request, data=config.to_dict())


@router.delete("/config", response_model=SuccessEnvelope[dict[str, Any]])
async def delete_config(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    _require_tenant_owner(principal)
    deleted = await _call(service.delete_config(principal.tenant_email))
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "CONFIG_NOT_FOUND", "message": "Private cloud is not configured"},
        )
    return success_response(request=request, data={"deleted": True})


@router.post("/setup", response_model=SuccessEnvelope[dict[str, Any]])
async def setup(
    request: Request,
    payload: SetupRequest,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    _require_tenant_owner(principal)
    config, probe = await _call(
        service.setup(
            principal.tenant_email,
            _descriptor(payload),
            notes=payload.notes,
            selected_tables=_selection(payload.selected_tables),
            created_by=principal.subject_email,
        )
    )
    return _setup_response(request, config, probe)


@router.post("/setup-simple", response_model=SuccessEnvelope[dict[str, Any]])
async def setup_simple(
    request: Request,
    payload: SetupSimpleRequest,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    _require_tenant_owner(principal)
    config, probe = await _call(
        service.setup_from_connection_string(
            principal.tenant_email,
            payload.connection_string,
            kind=payload.database_type,
            notes=payload.notes,
            selected_tables=_selection(payload.selected_tables),
            created_by=principal.subject_email,
        )
    )
    return _setup_response(request, config, probe)


@router.post("/test", response_model=SuccessEnvelope[dict[str, Any]])
async def test_connection(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    _require_tenant_owner(principal)
    result = await _call(service.test_connection(principal.tenant_email))
    return success_response(request=request, data=result.to_dict())


@router.post("/initialize-schema", response_model=SuccessEnvelope[dict[str, Any]])
async def initialize_schema(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    _require_tenant_owner(principal)
    result = await _call(service.initialize_schema(principal.tenant_email))
    return success_response(request=request, data=result)


@router.post("/validate-schema", response_model=SuccessEnvelope[dict[str, Any]])
async def validate_schema(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    result = await _call(service.validate_schema(principal.tenant_email))
    return success_response(request=request, data=result.to_dict())


@router.post("/activate", response_model=SuccessEnvelope[dict[str, Any]])
async def activate_routing(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    _require_tenant_owner(principal)
    config = await _call(service.activate_routing(principal.tenant_email))
    return success_response(request=request, data=config.to_dict())


@router.post("/complete-setup", response_model=SuccessEnvelope[dict[str, Any]])
async def complete_setup(
    request: Request,
    payload: SetupRequest,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    _require_tenant_owner(principal)
    result = await _call(
        service.complete_setup(
            principal.tenant_email,
            _descriptor(payload),
            notes=payload.notes,
            selected_tables=_selection(payload.selected_tables),
            created_by=principal.subject_email,
        )
    )
    return success_response(request=request, data=result)


@router.get("/test-routing", response_model=SuccessEnvelope[dict[str, Any]])
async def test_routing(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    result = await _call(service.test_routing(principal.tenant_email))
    return success_response(request=request, data=result)


@router.get("/check-access", response_model=SuccessEnvelope[dict[str, Any]])
async def check_access(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    result = await _call(service.check_access(principal.tenant_email))
    return success_response(request=request, data=result)


@router.post("/migrate-primary", response_model=SuccessEnvelope[dict[str, Any]])
async def migrate_primary(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    _require_tenant_owner(principal)
    report = await _call(service.migrate_primary_tables(principal.tenant_email))
    return success_response(request=request, data=report.to_dict())


@router.post("/migrate-all", response_model=SuccessEnvelope[dict[str, Any]])
async def migrate_all(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PrivateCloudService = Depends(get_private_cloud_service),
) -> dict:
    _require_tenant_owner(principal)
    report = await _call(service.migrate_all_tables(principal.tenant_email))
    return success_response(request=request, data=report.to_dict())


@router.get("/required-tables", response_model=SuccessEnvelope[dict[str, Any]])
async def required_tables(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> dict:
    tables = PrivateCloudService.list_required_tables()
    return success_response(request=request, data={"tables": tables, "count": len(tables)})


@router.get("/store-summary", response_model=SuccessEnvelope[dict[str, Any]])
async def store_summary(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    store: AsyncSession = Depends(get_routed_db),
) -> dict:
    # Reads go through the per-request routed session, exactly like tenant CRUD would.
    statistics = await tenant_statistics(store, principal.tenant_email)
    return success_response(request=request, data={"user_email": principal.tenant_email, "statistics": statistics})
