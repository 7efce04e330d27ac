from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from tenantplane.core.errors import ProviderRequestError, ProviderUnavailableError
from tenantplane.providers.compute.base import CallOutcome, IpKind
from tenantplane.providers.compute.fly_machines import FlyConfig, FlyMachinesClient
from tenantplane.services.resilience import CircuitBreakerConfig, RetryPolicy
from tenantplane.services.telemetry import external_latency_by_operation


MACHINES = "https://machines.test/v1"
GRAPHQL = "https://graphql.test/graphql"


def _client(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    max_attempts: int = 2,
    failure_threshold: int = 5,
) -> FlyMachinesClient:
    config = FlyConfig(
        api_token="fly-token",
        org_slug="acme",
        machines_api_url=MACHINES,
        graphql_url=GRAPHQL,
        retry=RetryPolicy(timeout_ms=1000, max_attempts=max_attempts, backoff_ms=1),
        breaker=CircuitBreakerConfig(failure_threshold=failure_threshold, open_seconds=30, half_open_trials=1),
        redis_url=None,
    )
    return FlyMachinesClient(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_create_app_posts_org_and_name() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": "app_1"})

    client = _client(handler)
    result = await client.create_app("tp-abc")
    await client.aclose()

    assert result.outcome == CallOutcome.OK
    assert result.resource_id == "tp-abc"
    assert seen[0].method == "POST"
    assert str(seen[0].url) == f"{MACHINES}/apps"
    assert json.loads(seen[0].content) == {"app_name": "tp-abc", "org_slug": "acme"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,body",
    [(409, {"error": "conflict"}), (422, {"error": "app name already taken"})],
)
async def test_create_app_conflict_is_already_exists(status_code: int, body: dict) -> None:
    client = _client(lambda request: httpx.Response(status_code, json=body))
    result = await client.create_app("tp-abc")
    assert result.outcome == CallOutcome.ALREADY_EXISTS


@pytest.mark.asyncio
async def test_transient_status_is_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={})

    result = await _client(handler).create_app("tp-abc")
    assert result.outcome == CallOutcome.OK
    assert calls["count"] == 2
    latency = external_latency_by_operation(60)
    assert set(latency) == {"compute.fly.create_app"}
    assert latency["compute.fly.create_app"]["max"] >= 0


@pytest.mark.asyncio
async def test_exhausted_retries_raise_unavailable() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(ProviderUnavailableError):
        await _client(handler, max_attempts=3).create_app("tp-abc")
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_invalid_request_is_not_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(400, json={"error": "invalid region"})

    with pytest.raises(ProviderRequestError) as excinfo:
        await _client(handler, max_attempts=3).create_app("tp-abc")
    assert excinfo.value.status_code == 400
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_timeout_reports_unknown_outcome_without_retry() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ReadTimeout("timed out", request=request)

    result = await _client(handler, max_attempts=3).create_app("tp-abc")
    assert result.outcome == CallOutcome.UNKNOWN
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_open_breaker_short_circuits_calls() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(500, text="down")

    client = _client(handler, max_attempts=1, failure_threshold=1)
    with pytest.raises(ProviderUnavailableError):
        await client.create_app("tp-abc")
    with pytest.raises(ProviderUnavailableError):
        await client.create_app("tp-abc")
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_create_volume_reuses_existing_named_volume() -> None:
    methods: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        return httpx.Response(
            200,
            json=[
                {"id": "vol_old", "name": "tenant_data", "state": "destroyed"},
                {"id": "vol_live", "name": "tenant_data", "state": "created"},
            ],
        )

    result = await _client(handler).create_volume("tp-abc", name="tenant_data", region="iad", size_gb=1)
    assert result.outcome == CallOutcome.ALREADY_EXISTS
    assert result.resource_id == "vol_live"
    assert methods == ["GET"]


@pytest.mark.asyncio
async def test_allocate_ip_treats_already_allocated_as_existing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert payload["variables"]["input"] == {"appId": "tp-abc", "type": "v6"}
        return httpx.Response(200, json={"data": None, "errors": [{"message": "IP already allocated"}]})

    result = await _client(handler).allocate_ip("tp-abc", kind=IpKind.V6)
    assert result.outcome == CallOutcome.ALREADY_EXISTS


@pytest.mark.asyncio
async def test_graphql_error_raises_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "hostname is invalid"}]})

    with pytest.raises(ProviderRequestError):
        await _client(handler).add_certificate("tp-abc", "bad host")


@pytest.mark.asyncio
async def test_get_machine_status_reads_state_image_and_checks() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "id": "m_1",
                "state": "started",
                "instance_id": "01HZX",
                "config": {"image": "registry.fly.io/apps:tenant-1"},
                "checks": [{"status": "passing"}, {"status": "critical"}],
            },
        )

    status = await _client(handler).get_machine_status("tp-abc", "m_1")
    assert status.state == "started"
    assert status.image == "registry.fly.io/apps:tenant-1"
    assert status.checks_passing is False
    assert status.healthy is False
    assert status.instance_id == "01HZX"


@pytest.mark.asyncio
async def test_find_machine_skips_destroyed_machines() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {"id": "m_old", "name": "tp-abc-web", "state": "destroyed"},
                {"id": "m_new", "name": "tp-abc-web", "state": "started"},
            ],
        )

    assert await _client(handler).find_machine("tp-abc", "tp-abc-web") == "m_new"


@pytest.mark.asyncio
async def test_update_machine_image_keeps_existing_config() -> None:
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(
                200,
                json={"id": "m_1", "config": {"image": "old", "env": {"TENANT_ID": "t1"}, "guest": {"memory_mb": 512}}},
            )
        posted.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "m_1"})

    result = await _client(handler).update_machine_image("tp-abc", "m_1", "new")
    assert result.outcome == CallOutcome.OK
    assert posted == [{"config": {"image": "new", "env": {"TENANT_ID": "t1"}, "guest": {"memory_mb": 512}}}]


@pytest.mark.asyncio
async def test_restart_with_env_merges_environment() -> None:
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"id": "m_1", "config": {"image": "img", "env": {"A": "1", "B": "2"}}})
        posted.append(json.loads(request.content))
        return httpx.Response(200, json={})

    await _client(handler).restart_machine("tp-abc", "m_1", env={"B": "3"})
    assert posted[0]["config"]["env"] == {"A": "1", "B": "3"}
