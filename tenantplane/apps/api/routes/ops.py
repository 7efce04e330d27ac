from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from tenantplane.apps.api.deps import get_current_principal
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.core.errors import AccessDeniedError
from tenantplane.services.access import ROLE_OPERATOR, Principal
from tenantplane.services.telemetry import counters_snapshot, external_latency_by_operation

router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class MetricsResponse(BaseModel):
    window_s: int
    counters: dict[str, int]
    # Keyed by "integration.operation", e.g. "compute.fly.create_machine".
    external_call_latency_ms: dict[str, dict[str, float | None]]


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(
    request: Request,
    window_s: int = Query(default=3600, ge=60, le=86400),
    principal: Principal = Depends(get_current_principal),
) -> dict:
    # Process-local counters and provider latency; operators only, they span every tenant.
    if principal.role != ROLE_OPERATOR:
        raise AccessDeniedError("operator role required")
    payload = MetricsResponse(
        window_s=window_s,
        counters=counters_snapshot(),
        external_call_latency_ms=external_latency_by_operation(window_s),
    )
    return success_response(request=request, data=payload)
