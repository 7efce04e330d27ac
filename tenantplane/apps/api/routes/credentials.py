from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel

from tenantplane.apps.api.deps import get_control_plane, get_current_principal
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, get_request_id, success_response
from tenantplane.apps.api.routes.tenants import api_base_url
from tenantplane.services.access import Principal
from tenantplane.services.control_plane import ControlPlane

router = APIRouter(prefix="/tenants", tags=["credentials"], responses=DEFAULT_ERROR_RESPONSES)


class CredentialsResponse(BaseModel):
    tenant_id: str
    database_url: str
    signing_secret: str
    app_url: str | None = None


class RotationResponse(BaseModel):
    tenant_id: str
    status: str
    secrets_url: str


@router.get("/{tenant_id}/credentials/{token}", response_model=SuccessEnvelope[CredentialsResponse])
async def retrieve_credentials(
    tenant_id: str,
    token: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    await plane.tenant_ops.get(principal, tenant_id)
    credentials = await plane.vault.retrieve_once(
        tenant_id, token, actor_id=principal.owner_id, request_id=get_request_id(request)
    )
    payload = CredentialsResponse(
        tenant_id=credentials.tenant_id,
        database_url=credentials.database_url,
        signing_secret=credentials.signing_secret,
        app_url=credentials.app_url,
    )
    return success_response(request=request, data=payload, response=response, sensitive=True)


@router.post("/{tenant_id}/rotate-credentials", response_model=SuccessEnvelope[RotationResponse])
async def rotate_credentials(
    tenant_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    token = await plane.rotate_credentials(principal, tenant_id, request_id=get_request_id(request))
    payload = RotationResponse(
        tenant_id=tenant_id,
        status="rotated",
        secrets_url=f"{api_base_url(request)}/tenants/{tenant_id}/credentials/{token}",
    )
    return success_response(request=request, data=payload, response=response, sensitive=True)
