from __future__ import annotations

import json

from tenantplane.apps.api.routes.events import _sse_frame, resolve_start_sequence
from tenantplane.apps.api.errors import status_for
from tenantplane.core.errors import (
    ConflictError,
    DeployTimeoutError,
    IntegrationUnavailableError,
    NotFoundError,
    ProviderRequestError,
    RotationError,
    StateError,
    ValidationError,
    WebhookSignatureError,
)


def test_sse_frame_with_id() -> None:
    frame = _sse_frame("provisioning", {"type": "tenant.created", "sequence_number": 1}, event_id=1)
    lines = frame.split("\n")
    assert lines[0] == "id: 1"
    assert lines[1] == "event: provisioning"
    assert json.loads(lines[2].removeprefix("data: ")) == {"type": "tenant.created", "sequence_number": 1}
    assert frame.endswith("\n\n")


def test_sse_frame_without_id() -> None:
    assert _sse_frame("heartbeat", {}) == "event: heartbeat\ndata: {}\n\n"


def test_resolve_start_sequence_prefers_query() -> None:
    assert resolve_start_sequence(4, "9") == 4
    assert resolve_start_sequence(None, "9") == 10
    assert resolve_start_sequence(None, " 2 ") == 3
    assert resolve_start_sequence(None, "garbage") == 0
    assert resolve_start_sequence(None, None) == 0


def test_error_status_mapping() -> None:
    assert status_for(ValidationError("bad")) == 400
    assert status_for(WebhookSignatureError("sig")) == 401
    assert status_for(NotFoundError("gone")) == 404
    assert status_for(ConflictError("busy")) == 409
    assert status_for(StateError("illegal")) == 409
    assert status_for(DeployTimeoutError("slow")) == 504
    assert status_for(RotationError("partial", step="machine_restart")) == 502
    assert status_for(ProviderRequestError("rejected", status_code=400)) == 502
    assert status_for(IntegrationUnavailableError("open")) == 503
