from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from tenantplane.apps.api.deps import get_control_plane
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, get_request_id, success_response
from tenantplane.services.control_plane import ControlPlane

router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class WebhookAck(BaseModel):
    status: str
    event_id: str
    tenant_id: str | None = None


@router.post("/{provider}", response_model=SuccessEnvelope[WebhookAck])
async def receive_webhook(
    provider: str,
    request: Request,
    plane: ControlPlane = Depends(get_control_plane),
) -> dict:
    # Signatures cover the exact bytes received, so the body is never re-serialized.
    raw_body = await request.body()
    result = await plane.ingestor.ingest(
        provider, dict(request.headers), raw_body, request_id=get_request_id(request)
    )
    payload = WebhookAck(status=result.status, event_id=result.event_id, tenant_id=result.tenant_id)
    return success_response(request=request, data=payload)
