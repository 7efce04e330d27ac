from __future__ import annotations

import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse

from tenantplane.apps.api.deps import get_control_plane, get_current_principal
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.core.errors import SubscriberOverflowError
from tenantplane.services.access import Principal
from tenantplane.services.control_plane import ControlPlane
from tenantplane.services.event_stream import Heartbeat

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants", tags=["events"], responses=DEFAULT_ERROR_RESPONSES)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
}


def _sse_frame(event: str, payload: dict, *, event_id: int | None = None) -> str:
    # One compact JSON line per frame; the id lets clients resume with Last-Event-ID.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    prefix = f"id: {event_id}\n" if event_id is not None else ""
    return f"{prefix}event: {event}\ndata: {data}\n\n"


def resolve_start_sequence(from_sequence: int | None, last_event_id: str | None) -> int:
    # An explicit query parameter wins over the reconnect header.
    if from_sequence is not None:
        return max(from_sequence, 0)
    if last_event_id:
        try:
            return int(last_event_id.strip()) + 1
        except ValueError:
            return 0
    return 0


@router.get("/{tenant_id}/events")
async def stream_events(
    tenant_id: str,
    request: Request,
    from_sequence: int | None = Query(default=None, ge=0),
    follow: bool = Query(default=True),
    last_event_id: str | None = Header(default=None, alias="Last-Event-ID"),
    principal: Principal = Depends(get_current_principal),
    plane: ControlPlane = Depends(get_control_plane),
) -> StreamingResponse:
    # Deleted tenants keep their history readable.
    await plane.tenant_ops.get(principal, tenant_id, include_deleted=True)
    start = resolve_start_sequence(from_sequence, last_event_id)

    async def event_stream() -> AsyncGenerator[str, None]:
        stream = plane.publisher.subscribe(tenant_id, start, follow=follow)
        try:
            async for item in stream:
                if isinstance(item, Heartbeat):
                    if await request.is_disconnected():
                        break
                    yield _sse_frame("heartbeat", {"at": item.at.isoformat()})
                    continue
                yield _sse_frame("provisioning", item.as_wire(), event_id=item.sequence_number)
        except SubscriberOverflowError as exc:
            logger.warning("event_stream_overflow tenant_id=%s", tenant_id)
            yield _sse_frame("error", {"code": exc.code, "message": exc.message, "details": exc.details or {}})
        finally:
            await stream.aclose()

    return StreamingResponse(event_stream(), headers=_SSE_HEADERS, media_type="text/event-stream")
