from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from tenantplane.apps.api.deps import get_control_plane, get_current_principal
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, get_request_id, success_response
from tenantplane.services.access import Principal
from tenantplane.services.control_plane import ControlPlane

router = APIRouter(prefix="/tenants", tags=["deploy"], responses=DEFAULT_ERROR_RESPONSES)


class DeployRequestBody(BaseModel):
    # Must equal the registry token's "{registry}/{repository}:{tag}" byte for byte.
    image: str = Field(min_length=1, max_length=512)


class DeployResponse(BaseModel):
    tenant_id: str
    machine_id: str
    image: str
    status: str
    first_deploy: bool
    app_url: str | None = None


@router.post("/{tenant_id}/deploy", response_model=SuccessEnvelope[DeployResponse])
async def deploy(
    tenant_id: str,
    payload: DeployRequestBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    # Deploys run to completion within the request; the event stream reports progress meanwhile.
    outcome = await plane.deployer.deploy(
        principal, tenant_id, payload.image, request_id=get_request_id(request)
    )
    return success_response(request=request, data=outcome)
