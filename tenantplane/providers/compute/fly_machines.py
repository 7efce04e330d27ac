from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import logging
import time
from typing import Any

import httpx

from tenantplane.core.errors import (
    IntegrationUnavailableError,
    ProviderRequestError,
    ProviderUnavailableError,
)
from tenantplane.providers.compute.base import (
    CallOutcome,
    IpKind,
    MachineSpec,
    MachineStatus,
    ProviderResult,
)
from tenantplane.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    get_resilience_redis,
    retry_async,
)
from tenantplane.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

INTEGRATION = "compute.fly"

_ALLOCATE_IP = """
mutation($input: AllocateIPAddressInput!) {
  allocateIpAddress(input: $input) { ipAddress { id address type } }
}
"""

_ADD_CERTIFICATE = """
mutation($appId: ID!, $hostname: String!) {
  addCertificate(appId: $appId, hostname: $hostname) { certificate { id hostname } }
}
"""

_SET_SECRETS = """
mutation($input: SetSecretsInput!) {
  setSecrets(input: $input) { release { id version } }
}
"""

_UNSET_SECRETS = """
mutation($input: UnsetSecretsInput!) {
  unsetSecrets(input: $input) { release { id version } }
}
"""


@dataclass(frozen=True)
class FlyConfig:
    api_token: str
    org_slug: str
    machines_api_url: str
    graphql_url: str
    retry: RetryPolicy
    breaker: CircuitBreakerConfig
    redis_url: str | None = None


class _TransientStatusError(Exception):
    # Raised inside the retry loop so 5xx/429 responses are retried like network errors.
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"provider returned {status_code}")
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class _Reply:
    outcome: CallOutcome
    body: Any = None


def _retryable(exc: Exception) -> bool:
    # Timeouts are not retried: the first attempt may have taken effect.
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return False
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, _TransientStatusError)


def _is_conflict(status_code: int, text: str) -> bool:
    if status_code == 409:
        return True
    return status_code in (400, 422) and "already" in text.lower()


class FlyMachinesClient:
    def __init__(self, config: FlyConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client
        self._breaker: CircuitBreaker | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(
            timeout=self._config.retry.timeout_ms / 1000.0,
            headers={"Authorization": f"Bearer {self._config.api_token}"},
        )
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        redis = await get_resilience_redis(self._config.redis_url)
        self._breaker = CircuitBreaker(INTEGRATION, config=self._config.breaker, redis=redis)
        return self._breaker

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> tuple[CallOutcome, httpx.Response | None]:
        client = self._get_client()
        breaker = await self._get_breaker()
        policy = self._config.retry
        if timeout_s is not None:
            policy = replace(policy, timeout_ms=int(timeout_s * 1000))
        start = time.monotonic()

        def _sample(success: bool) -> None:
            record_external_call(
                integration=INTEGRATION,
                operation=operation,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

        try:
            await breaker.before_call()
        except IntegrationUnavailableError as exc:
            raise ProviderUnavailableError(f"{operation}: {exc.message}") from exc

        async def _attempt() -> httpx.Response:
            response = await client.request(method, url, json=json, params=params)
            if response.status_code >= 500 or response.status_code == 429:
                raise _TransientStatusError(response.status_code, response.text)
            return response

        try:
            response = await retry_async(_attempt, policy=policy, retryable=_retryable)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            await breaker.record_failure()
            _sample(False)
            increment_counter("provider_unknown_outcomes_total")
            logger.warning("provider_call_timeout operation=%s", operation)
            return CallOutcome.UNKNOWN, None
        except (httpx.TransportError, _TransientStatusError) as exc:
            await breaker.record_failure()
            _sample(False)
            logger.warning("provider_call_unavailable operation=%s error=%s", operation, exc)
            raise ProviderUnavailableError(f"{operation}: provider unavailable after retries") from exc

        # 4xx responses mean the provider is reachable; only transient failures trip the breaker.
        await breaker.record_success()
        if response.status_code >= 400:
            _sample(False)
            if _is_conflict(response.status_code, response.text):
                return CallOutcome.ALREADY_EXISTS, response
            raise ProviderRequestError(
                f"{operation}: provider rejected request ({response.status_code})",
                status_code=response.status_code,
                details={"body": response.text[:500]},
            )
        _sample(True)
        return CallOutcome.OK, response

    async def _rest(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> _Reply:
        url = f"{self._config.machines_api_url.rstrip('/')}{path}"
        outcome, response = await self._send(
            operation, method, url, json=json, params=params, timeout_s=timeout_s
        )
        if response is None or outcome != CallOutcome.OK or not response.content:
            return _Reply(outcome)
        return _Reply(outcome, response.json())

    async def _graphql(
        self,
        operation: str,
        query: str,
        variables: dict[str, Any],
        *,
        timeout_s: float | None = None,
    ) -> _Reply:
        outcome, response = await self._send(
            operation,
            "POST",
            self._config.graphql_url,
            json={"query": query, "variables": variables},
            timeout_s=timeout_s,
        )
        if response is None or outcome != CallOutcome.OK:
            return _Reply(outcome)
        body = response.json()
        # GraphQL reports failures in a 200 body rather than through the status code.
        errors = body.get("errors") or []
        if errors:
            messages = "; ".join(str(item.get("message", "")) for item in errors)
            if "already" in messages.lower():
                return _Reply(CallOutcome.ALREADY_EXISTS, body.get("data"))
            raise ProviderRequestError(f"{operation}: {messages}", details={"errors": errors})
        return _Reply(CallOutcome.OK, body.get("data") or {})

    async def create_app(self, app_name: str, *, timeout_s: float | None = None) -> ProviderResult:
        reply = await self._rest(
            "create_app",
            "POST",
            "/apps",
            json={"app_name": app_name, "org_slug": self._config.org_slug},
            timeout_s=timeout_s,
        )
        return ProviderResult(reply.outcome, resource_id=app_name)

    async def _list_volumes(self, app_name: str, timeout_s: float | None) -> list[dict[str, Any]] | None:
        reply = await self._rest("list_volumes", "GET", f"/apps/{app_name}/volumes", timeout_s=timeout_s)
        if reply.outcome == CallOutcome.UNKNOWN:
            return None
        return list(reply.body or [])

    async def create_volume(
        self, app_name: str, *, name: str, region: str, size_gb: int, timeout_s: float | None = None
    ) -> ProviderResult:
        # Volume names are not unique on the provider, so look before creating.
        volumes = await self._list_volumes(app_name, timeout_s)
        if volumes is None:
            return ProviderResult(CallOutcome.UNKNOWN)
        for volume in volumes:
            if volume.get("name") == name and volume.get("state") not in ("destroyed", "destroying"):
                return ProviderResult(CallOutcome.ALREADY_EXISTS, resource_id=volume.get("id"))
        reply = await self._rest(
            "create_volume",
            "POST",
            f"/apps/{app_name}/volumes",
            json={"name": name, "region": region, "size_gb": size_gb},
            timeout_s=timeout_s,
        )
        volume_id = (reply.body or {}).get("id") if isinstance(reply.body, dict) else None
        return ProviderResult(reply.outcome, resource_id=volume_id)

    async def allocate_ip(self, app_name: str, *, kind: IpKind, timeout_s: float | None = None) -> ProviderResult:
        reply = await self._graphql(
            f"allocate_ip_{kind.value}",
            _ALLOCATE_IP,
            {"input": {"appId": app_name, "type": kind.value}},
            timeout_s=timeout_s,
        )
        address = ((reply.body or {}).get("allocateIpAddress") or {}).get("ipAddress") or {}
        return ProviderResult(reply.outcome, resource_id=address.get("id"), data={"address": address.get("address")})

    async def add_certificate(self, app_name: str, hostname: str, *, timeout_s: float | None = None) -> ProviderResult:
        reply = await self._graphql(
            "add_certificate",
            _ADD_CERTIFICATE,
            {"appId": app_name, "hostname": hostname},
            timeout_s=timeout_s,
        )
        return ProviderResult(reply.outcome, resource_id=hostname)

    async def create_machine(
        self, app_name: str, spec: MachineSpec, *, timeout_s: float | None = None
    ) -> ProviderResult:
        config: dict[str, Any] = {
            "image": spec.image,
            "env": dict(spec.env),
            "guest": {"cpu_kind": "shared", "cpus": 1, "memory_mb": spec.memory_mb},
            "services": [
                {
                    "protocol": "tcp",
                    "internal_port": spec.internal_port,
                    "ports": [
                        {"port": 80, "handlers": ["http"], "force_https": True},
                        {"port": 443, "handlers": ["tls", "http"]},
                    ],
                }
            ],
            "restart": {"policy": "always"},
        }
        if spec.volume_id:
            config["mounts"] = [{"volume": spec.volume_id, "path": spec.mount_path}]
        reply = await self._rest(
            "create_machine",
            "POST",
            f"/apps/{app_name}/machines",
            json={"name": spec.name, "region": spec.region, "config": config},
            timeout_s=timeout_s,
        )
        machine_id = reply.body.get("id") if isinstance(reply.body, dict) else None
        return ProviderResult(reply.outcome, resource_id=machine_id)

    async def find_machine(self, app_name: str, name: str, *, timeout_s: float | None = None) -> str | None:
        reply = await self._rest("list_machines", "GET", f"/apps/{app_name}/machines", timeout_s=timeout_s)
        for machine in reply.body or []:
            if machine.get("name") == name and machine.get("state") not in ("destroyed", "destroying"):
                return machine.get("id")
        return None

    async def _machine_config(
        self, app_name: str, machine_id: str, timeout_s: float | None
    ) -> dict[str, Any] | None:
        reply = await self._rest(
            "get_machine", "GET", f"/apps/{app_name}/machines/{machine_id}", timeout_s=timeout_s
        )
        if reply.outcome == CallOutcome.UNKNOWN or not isinstance(reply.body, dict):
            return None
        return dict(reply.body.get("config") or {})

    async def _update_config(
        self,
        operation: str,
        app_name: str,
        machine_id: str,
        mutate: dict[str, Any],
        timeout_s: float | None,
    ) -> ProviderResult:
        # Machine updates replace the whole config, so start from the current one.
        config = await self._machine_config(app_name, machine_id, timeout_s)
        if config is None:
            return ProviderResult(CallOutcome.UNKNOWN, resource_id=machine_id)
        for key, value in mutate.items():
            if key == "env":
                merged = dict(config.get("env") or {})
                merged.update(value)
                config["env"] = merged
            else:
                config[key] = value
        reply = await self._rest(
            operation,
            "POST",
            f"/apps/{app_name}/machines/{machine_id}",
            json={"config": config},
            timeout_s=timeout_s,
        )
        return ProviderResult(reply.outcome, resource_id=machine_id)

    async def update_machine_image(
        self, app_name: str, machine_id: str, image: str, *, timeout_s: float | None = None
    ) -> ProviderResult:
        return await self._update_config("update_machine_image", app_name, machine_id, {"image": image}, timeout_s)

    async def get_machine_status(
        self, app_name: str, machine_id: str, *, timeout_s: float | None = None
    ) -> MachineStatus:
        reply = await self._rest(
            "get_machine_status", "GET", f"/apps/{app_name}/machines/{machine_id}", timeout_s=timeout_s
        )
        if reply.outcome == CallOutcome.UNKNOWN or not isinstance(reply.body, dict):
            return MachineStatus(machine_id=machine_id, state="unknown", checks_passing=False)
        checks = reply.body.get("checks") or []
        passing = all(check.get("status") == "passing" for check in checks)
        return MachineStatus(
            machine_id=machine_id,
            state=str(reply.body.get("state") or "unknown"),
            image=(reply.body.get("config") or {}).get("image"),
            checks_passing=passing,
            instance_id=reply.body.get("instance_id"),
        )

    async def set_machine_secrets(
        self, app_name: str, secrets: dict[str, str], *, timeout_s: float | None = None
    ) -> ProviderResult:
        reply = await self._graphql(
            "set_secrets",
            _SET_SECRETS,
            {
                "input": {
                    "appId": app_name,
                    "secrets": [{"key": key, "value": value} for key, value in sorted(secrets.items())],
                    # Machines pick values up on restart, not on release.
                    "replaceAll": False,
                }
            },
            timeout_s=timeout_s,
        )
        return ProviderResult(reply.outcome, resource_id=app_name)

    async def unset_machine_secrets(
        self, app_name: str, keys: list[str], *, timeout_s: float | None = None
    ) -> ProviderResult:
        reply = await self._graphql(
            "unset_secrets",
            _UNSET_SECRETS,
            {"input": {"appId": app_name, "keys": list(keys)}},
            timeout_s=timeout_s,
        )
        return ProviderResult(reply.outcome, resource_id=app_name)

    async def restart_machine(
        self,
        app_name: str,
        machine_id: str,
        *,
        env: dict[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> ProviderResult:
        if env:
            # A config update restarts the machine with the merged environment.
            return await self._update_config("restart_machine", app_name, machine_id, {"env": env}, timeout_s)
        reply = await self._rest(
            "restart_machine", "POST", f"/apps/{app_name}/machines/{machine_id}/restart", timeout_s=timeout_s
        )
        return ProviderResult(reply.outcome, resource_id=machine_id)

    async def stop_machine(self, app_name: str, machine_id: str, *, timeout_s: float | None = None) -> ProviderResult:
        reply = await self._rest(
            "stop_machine", "POST", f"/apps/{app_name}/machines/{machine_id}/stop", timeout_s=timeout_s
        )
        return ProviderResult(reply.outcome, resource_id=machine_id)

    async def start_machine(self, app_name: str, machine_id: str, *, timeout_s: float | None = None) -> ProviderResult:
        reply = await self._rest(
            "start_machine", "POST", f"/apps/{app_name}/machines/{machine_id}/start", timeout_s=timeout_s
        )
        return ProviderResult(reply.outcome, resource_id=machine_id)

    async def delete_app(self, app_name: str, *, timeout_s: float | None = None) -> ProviderResult:
        reply = await self._rest(
            "delete_app", "DELETE", f"/apps/{app_name}", params={"force": "true"}, timeout_s=timeout_s
        )
        return ProviderResult(reply.outcome, resource_id=app_name)
