from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from tenantplane.apps.api.main import create_app
from tenantplane.services.auth.api_keys import revoke_api_key
from tenantplane.tests.utils.auth import create_test_api_key
from tenantplane.tests.utils.tenants import (
    create_provisioned_tenant,
    create_running_tenant,
    paddle_event,
    signed_paddle_delivery,
)


@pytest.fixture
async def client(plane):
    app = create_app(control_plane=plane)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


@pytest.fixture
async def owner_headers(session_factory) -> dict[str, str]:
    _, headers, _ = await create_test_api_key(session_factory, owner_id="owner-1")
    return headers


def _sse_events(body: str) -> list[dict]:
    frames = []
    for block in body.strip().split("\n\n"):
        fields = dict(line.split(": ", 1) for line in block.splitlines() if ": " in line)
        frames.append({"id": fields.get("id"), "event": fields.get("event"), "data": json.loads(fields["data"])})
    return frames


@pytest.mark.asyncio
async def test_health_is_public(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok"}
    assert body["meta"] == {"request_id": "req-1", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-1"


@pytest.mark.asyncio
async def test_unsafe_request_id_is_replaced(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req 1 status=forged"})

    request_id = response.json()["meta"]["request_id"]
    assert request_id != "req 1 status=forged"
    assert " " not in request_id
    assert response.headers["X-Request-Id"] == request_id


@pytest.mark.asyncio
async def test_missing_or_invalid_api_key_is_rejected(client) -> None:
    response = await client.get("/v1/tenants")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

    response = await client.get("/v1/tenants", headers={"Authorization": "Bearer tp_nope"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_webhook_signature_is_enforced(client, compute) -> None:
    body = paddle_event("subscription.created")
    headers, raw = signed_paddle_delivery(body, secret="wrong")

    response = await client.post("/v1/webhooks/paddle", content=raw, headers=headers)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert compute.calls == []


@pytest.mark.asyncio
async def test_webhook_accepts_and_deduplicates(client) -> None:
    headers, raw = signed_paddle_delivery(paddle_event("subscription.created", subscription_id="sub_http"))

    first = await client.post("/v1/webhooks/paddle", content=raw, headers=headers)
    second = await client.post("/v1/webhooks/paddle", content=raw, headers=headers)

    assert first.status_code == 200
    assert first.json()["data"]["status"] == "accepted"
    assert second.json()["data"]["status"] == "duplicate"
    assert second.json()["data"]["tenant_id"] == first.json()["data"]["tenant_id"]


@pytest.mark.asyncio
async def test_unknown_webhook_provider_is_not_found(client) -> None:
    response = await client.post("/v1/webhooks/stripe", content=b"{}")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_status_then_one_time_credentials(client, plane, owner_headers) -> None:
    tenant_id = await create_provisioned_tenant(plane)

    status = await client.get(f"/v1/tenants/{tenant_id}/status", headers=owner_headers)
    assert status.status_code == 200
    assert status.headers["Cache-Control"] == "no-store"
    view = status.json()["data"]
    assert view["status"] == "awaiting_deploy"
    secrets_url = view["secrets_url"]
    assert secrets_url.startswith(f"http://test/v1/tenants/{tenant_id}/credentials/")

    first = await client.get(secrets_url, headers=owner_headers)
    assert first.status_code == 200
    assert first.headers["Cache-Control"] == "no-store"
    assert first.json()["data"]["database_url"].startswith("postgresql://")

    second = await client.get(secrets_url, headers=owner_headers)
    assert second.status_code == 404
    assert (await client.get(f"/v1/tenants/{tenant_id}/status", headers=owner_headers)).json()["data"][
        "secrets_url"
    ] is None


@pytest.mark.asyncio
async def test_deploy_rejects_mismatched_image(client, plane, owner_headers, compute) -> None:
    tenant_id = await create_provisioned_tenant(plane)
    before = len(compute.calls)

    response = await client.post(
        f"/v1/tenants/{tenant_id}/deploy",
        json={"image": "registry.fly.io/someone-else:latest"},
        headers=owner_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "IMAGE_MISMATCH"
    assert len(compute.calls) == before
    assert plane.validator.expected_image_reference(tenant_id) not in response.text


@pytest.mark.asyncio
async def test_registry_token_then_deploy(client, plane, owner_headers) -> None:
    tenant_id = await create_provisioned_tenant(plane)

    token_response = await client.get(f"/v1/tenants/{tenant_id}/registry-token", headers=owner_headers)
    assert token_response.headers["Cache-Control"] == "no-store"
    token = token_response.json()["data"]
    assert token["token"] == "push-token"
    image = f"{token['registry']}/{token['repository']}:{token['tag']}"

    response = await client.post(f"/v1/tenants/{tenant_id}/deploy", json={"image": image}, headers=owner_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "running"
    assert data["first_deploy"] is True
    assert data["image"] == image


@pytest.mark.asyncio
async def test_other_owner_is_forbidden(client, plane, session_factory) -> None:
    tenant_id = await create_provisioned_tenant(plane, owner_id="owner-1")
    _, intruder_headers, _ = await create_test_api_key(session_factory, owner_id="owner-2")

    response = await client.get(f"/v1/tenants/{tenant_id}", headers=intruder_headers)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"

    listed = await client.get("/v1/tenants", headers=intruder_headers)
    assert listed.json()["data"] == []


@pytest.mark.asyncio
async def test_invalid_transition_maps_to_conflict(client, plane, owner_headers) -> None:
    tenant_id = await create_provisioned_tenant(plane)

    response = await client.post(f"/v1/tenants/{tenant_id}/retry-provision", headers=owner_headers)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_STATE_TRANSITION"


@pytest.mark.asyncio
async def test_event_history_replays_as_sse(client, plane, owner_headers) -> None:
    tenant_id = await create_provisioned_tenant(plane)

    response = await client.get(f"/v1/tenants/{tenant_id}/events", params={"follow": "false"}, headers=owner_headers)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = _sse_events(response.text)
    sequences = [frame["data"]["sequence_number"] for frame in frames]
    assert sequences == list(range(1, len(frames) + 1))
    assert all(frame["event"] == "provisioning" for frame in frames)
    assert frames[0]["data"]["type"] == "tenant.created"
    assert frames[-1]["data"]["to_status"] == "awaiting_deploy"
    assert frames[-1]["id"] == str(sequences[-1])

    resumed = await client.get(
        f"/v1/tenants/{tenant_id}/events",
        params={"follow": "false"},
        headers={**owner_headers, "Last-Event-ID": "2"},
    )
    assert [frame["data"]["sequence_number"] for frame in _sse_events(resumed.text)] == sequences[2:]


@pytest.mark.asyncio
async def test_env_secrets_roundtrip(client, plane, owner_headers) -> None:
    tenant_id = await create_running_tenant(plane)

    put = await client.put(
        f"/v1/tenants/{tenant_id}/secrets", json={"values": {"FEATURE_X": "on"}}, headers=owner_headers
    )
    assert put.status_code == 200
    assert put.json()["data"]["keys"] == ["FEATURE_X"]

    listed = await client.get(f"/v1/tenants/{tenant_id}/secrets", headers=owner_headers)
    assert listed.json()["data"]["keys"] == ["FEATURE_X"]

    rejected = await client.put(
        f"/v1/tenants/{tenant_id}/secrets", json={"values": {"DATABASE_URL": "x"}}, headers=owner_headers
    )
    assert rejected.status_code == 400
    assert rejected.json()["error"]["code"] == "SYSTEM_MANAGED_KEY"

    removed = await client.delete(
        f"/v1/tenants/{tenant_id}/secrets", params={"key": "FEATURE_X"}, headers=owner_headers
    )
    assert removed.json()["data"]["keys"] == ["FEATURE_X"]
    assert (await client.get(f"/v1/tenants/{tenant_id}/secrets", headers=owner_headers)).json()["data"][
        "keys"
    ] == []


@pytest.mark.asyncio
async def test_request_validation_uses_error_envelope(client, plane, owner_headers) -> None:
    tenant_id = await create_provisioned_tenant(plane)

    response = await client.post(f"/v1/tenants/{tenant_id}/deploy", json={}, headers=owner_headers)

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_revoked_api_key_is_rejected(client, session_factory) -> None:
    _, headers, key_id = await create_test_api_key(session_factory, owner_id="owner-1")
    assert (await client.get("/v1/tenants", headers=headers)).status_code == 200

    async with session_factory() as session:
        assert await revoke_api_key(session, key_id) is True
        await session.commit()

    response = await client.get("/v1/tenants", headers=headers)
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_rotate_restart_and_delete(client, plane, owner_headers, compute) -> None:
    tenant_id = await create_running_tenant(plane)

    rotated = await client.post(f"/v1/tenants/{tenant_id}/rotate-credentials", headers=owner_headers)
    assert rotated.status_code == 200
    assert rotated.headers["Cache-Control"] == "no-store"
    secrets_url = rotated.json()["data"]["secrets_url"]
    assert (await client.get(secrets_url, headers=owner_headers)).status_code == 200

    restarted = await client.post(f"/v1/tenants/{tenant_id}/restart", headers=owner_headers)
    assert restarted.json()["data"] == {"tenant_id": tenant_id, "status": "restarted"}
    # One restart from the rotation, one from the explicit request.
    assert len(compute.calls_for("restart_machine")) == 2

    deleted = await client.delete(f"/v1/tenants/{tenant_id}", headers=owner_headers)
    assert deleted.status_code == 200
    assert (await client.get(f"/v1/tenants/{tenant_id}", headers=owner_headers)).status_code == 404
    # History stays readable after deletion.
    history = await client.get(f"/v1/tenants/{tenant_id}/events", params={"follow": "false"}, headers=owner_headers)
    assert _sse_events(history.text)[-1]["data"]["to_status"] == "deleted"


@pytest.mark.asyncio
async def test_ops_metrics_are_operator_only(client, plane, owner_headers, session_factory) -> None:
    await create_running_tenant(plane)

    forbidden = await client.get("/v1/ops/metrics", headers=owner_headers)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"

    _, operator_headers, _ = await create_test_api_key(session_factory, owner_id="ops", role="operator")
    response = await client.get("/v1/ops/metrics", headers=operator_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["window_s"] == 3600
    assert data["counters"]["tenants_created_total"] == 1
    assert data["counters"]["deploy_succeeded_total"] == 1
    # The in-memory provider makes no network calls, so no latency is sampled.
    assert data["external_call_latency_ms"] == {}
