from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from tenantplane.apps.api.deps import get_control_plane, get_current_principal
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, get_request_id, success_response
from tenantplane.services.access import Principal
from tenantplane.services.control_plane import ControlPlane

router = APIRouter(prefix="/tenants", tags=["tenants"], responses=DEFAULT_ERROR_RESPONSES)


class TenantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    status: str
    region: str
    memory_mb: int
    volume_gb: int
    plan_id: str
    owner_id: str
    hostname: str
    compute_app_name: str
    compute_machine_id: str | None = None
    rotation_pending: bool = False
    rotation_failed_step: str | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TenantStatusResponse(BaseModel):
    status: str
    message: str
    app_url: str | None = None
    secrets_url: str | None = None


class RegistryTokenResponse(BaseModel):
    registry: str
    username: str
    token: str
    repository: str
    tag: str


class EnvKeysResponse(BaseModel):
    keys: list[str]


class EnvSetRequest(BaseModel):
    # Values go straight to the provider secret store; only key names are kept here.
    values: dict[str, str] = Field(min_length=1)


class AcceptedResponse(BaseModel):
    tenant_id: str
    status: str


def api_base_url(request: Request) -> str:
    return f"{str(request.base_url).rstrip('/')}/v1"


@router.get("", response_model=SuccessEnvelope[list[TenantResponse]])
async def list_tenants(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    tenants = await plane.tenant_ops.list_tenants(principal, limit=limit)
    data = [TenantResponse.model_validate(tenant).model_dump(mode="json") for tenant in tenants]
    return success_response(request=request, data=data)


@router.get("/{tenant_id}", response_model=SuccessEnvelope[TenantResponse])
async def get_tenant(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    tenant = await plane.tenant_ops.get(principal, tenant_id)
    return success_response(request=request, data=TenantResponse.model_validate(tenant))


@router.get("/{tenant_id}/status", response_model=SuccessEnvelope[TenantStatusResponse])
async def get_status(
    tenant_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    view = await plane.tenant_ops.status(principal, tenant_id, secrets_url_base=api_base_url(request))
    payload = TenantStatusResponse(
        status=view.status, message=view.message, app_url=view.app_url, secrets_url=view.secrets_url
    )
    return success_response(request=request, data=payload, response=response, sensitive=True)


@router.get("/{tenant_id}/registry-token", response_model=SuccessEnvelope[RegistryTokenResponse])
async def get_registry_token(
    tenant_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    await plane.tenant_ops.get(principal, tenant_id)
    token = plane.validator.registry_token(tenant_id)
    return success_response(
        request=request, data=RegistryTokenResponse(**token), response=response, sensitive=True
    )


@router.post("/{tenant_id}/restart", response_model=SuccessEnvelope[AcceptedResponse])
async def restart_tenant(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    await plane.tenant_ops.restart(principal, tenant_id)
    return success_response(request=request, data=AcceptedResponse(tenant_id=tenant_id, status="restarted"))


@router.post("/{tenant_id}/retry-provision", status_code=202, response_model=SuccessEnvelope[AcceptedResponse])
async def retry_provision(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    await plane.retry_provisioning(principal, tenant_id, request_id=get_request_id(request))
    return success_response(request=request, data=AcceptedResponse(tenant_id=tenant_id, status="provisioning"))


@router.delete("/{tenant_id}", response_model=SuccessEnvelope[AcceptedResponse])
async def delete_tenant(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    await plane.tenant_ops.delete(principal, tenant_id, reason=f"api:{principal.owner_id}")
    return success_response(request=request, data=AcceptedResponse(tenant_id=tenant_id, status="deleted"))


@router.get("/{tenant_id}/secrets", response_model=SuccessEnvelope[EnvKeysResponse])
async def list_env(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    keys = await plane.tenant_ops.list_env(principal, tenant_id)
    return success_response(request=request, data=EnvKeysResponse(keys=keys))


@router.put("/{tenant_id}/secrets", response_model=SuccessEnvelope[EnvKeysResponse])
async def set_env(
    tenant_id: str,
    payload: EnvSetRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    keys = await plane.tenant_ops.set_env(principal, tenant_id, payload.values)
    return success_response(request=request, data=EnvKeysResponse(keys=keys))


@router.delete("/{tenant_id}/secrets", response_model=SuccessEnvelope[EnvKeysResponse])
async def unset_env(
    tenant_id: str,
    request: Request,
    keys: list[str] = Query(..., alias="key", min_length=1),
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    removed = await plane.tenant_ops.unset_env(principal, tenant_id, keys)
    return success_response(request=request, data=EnvKeysResponse(keys=removed))
