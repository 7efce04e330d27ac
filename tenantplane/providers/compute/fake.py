from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from tenantplane.providers.compute.base import (
    CallOutcome,
    IpKind,
    MachineSpec,
    MachineStatus,
    ProviderResult,
)


@dataclass
class FakeMachine:
    id: str
    name: str
    image: str
    env: dict[str, str]
    state: str = "started"
    restarts: int = 0
    version: int = 1

    @property
    def instance_id(self) -> str:
        return f"{self.id}-v{self.version}"


@dataclass
class FakeApp:
    name: str
    volumes: dict[str, str] = field(default_factory=dict)
    ips: dict[str, str] = field(default_factory=dict)
    certificates: set[str] = field(default_factory=set)
    secrets: dict[str, str] = field(default_factory=dict)
    machines: dict[str, FakeMachine] = field(default_factory=dict)


class FakeComputeProvider:
    """In-memory provider for local dev and tests.

    Every call is appended to ``calls`` as ``(operation, args)`` so tests can
    assert exactly which side effects happened. Failures and timeouts are
    injected per operation with ``fail_next`` and ``time_out_next``.
    """

    def __init__(self, *, polls_until_healthy: int = 0) -> None:
        self.apps: dict[str, FakeApp] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.polls_until_healthy = polls_until_healthy
        # Image that never becomes healthy, to drive deploy timeouts.
        self.unhealthy_images: set[str] = set()
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._timeouts: dict[str, int] = defaultdict(int)
        self._polls: dict[str, int] = defaultdict(int)
        self._next_id = 0

    def fail_next(self, operation: str, exc: Exception, *, times: int = 1) -> None:
        self._failures[operation].extend([exc] * times)

    def time_out_next(self, operation: str, *, times: int = 1) -> None:
        # The call takes effect but its outcome is reported as unknown.
        self._timeouts[operation] += times

    def calls_for(self, operation: str) -> list[dict[str, Any]]:
        return [args for name, args in self.calls if name == operation]

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}_{self._next_id:04d}"

    def _enter(self, operation: str, **args: Any) -> None:
        self.calls.append((operation, args))
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _outcome(self, operation: str, existed: bool) -> CallOutcome:
        if self._timeouts.get(operation, 0) > 0:
            self._timeouts[operation] -= 1
            return CallOutcome.UNKNOWN
        return CallOutcome.ALREADY_EXISTS if existed else CallOutcome.OK

    def _app(self, app_name: str) -> FakeApp:
        app = self.apps.get(app_name)
        if app is None:
            app = FakeApp(name=app_name)
            self.apps[app_name] = app
        return app

    async def create_app(self, app_name: str, *, timeout_s: float | None = None) -> ProviderResult:
        self._enter("create_app", app_name=app_name)
        existed = app_name in self.apps
        self._app(app_name)
        return ProviderResult(self._outcome("create_app", existed), resource_id=app_name)

    async def create_volume(
        self, app_name: str, *, name: str, region: str, size_gb: int, timeout_s: float | None = None
    ) -> ProviderResult:
        self._enter("create_volume", app_name=app_name, name=name, region=region, size_gb=size_gb)
        app = self._app(app_name)
        existed = name in app.volumes
        if not existed:
            app.volumes[name] = self._new_id("vol")
        outcome = self._outcome("create_volume", existed)
        volume_id = None if outcome == CallOutcome.UNKNOWN else app.volumes[name]
        return ProviderResult(outcome, resource_id=volume_id)

    async def allocate_ip(self, app_name: str, *, kind: IpKind, timeout_s: float | None = None) -> ProviderResult:
        self._enter(f"allocate_ip_{kind.value}", app_name=app_name)
        app = self._app(app_name)
        existed = kind.value in app.ips
        if not existed:
            app.ips[kind.value] = "fdaa::1" if kind == IpKind.V6 else "66.241.124.1"
        return ProviderResult(
            self._outcome(f"allocate_ip_{kind.value}", existed),
            resource_id=f"ip_{kind.value}",
            data={"address": app.ips[kind.value]},
        )

    async def add_certificate(self, app_name: str, hostname: str, *, timeout_s: float | None = None) -> ProviderResult:
        self._enter("add_certificate", app_name=app_name, hostname=hostname)
        app = self._app(app_name)
        existed = hostname in app.certificates
        app.certificates.add(hostname)
        return ProviderResult(self._outcome("add_certificate", existed), resource_id=hostname)

    async def create_machine(
        self, app_name: str, spec: MachineSpec, *, timeout_s: float | None = None
    ) -> ProviderResult:
        self._enter("create_machine", app_name=app_name, name=spec.name, image=spec.image, env=dict(spec.env))
        app = self._app(app_name)
        existing = next((m for m in app.machines.values() if m.name == spec.name), None)
        if existing is None:
            machine = FakeMachine(id=self._new_id("m"), name=spec.name, image=spec.image, env=dict(spec.env))
            machine.state = "starting"
            app.machines[machine.id] = machine
            existing_id, existed = machine.id, False
        else:
            existing_id, existed = existing.id, True
        outcome = self._outcome("create_machine", existed)
        return ProviderResult(outcome, resource_id=None if outcome == CallOutcome.UNKNOWN else existing_id)

    async def find_machine(self, app_name: str, name: str, *, timeout_s: float | None = None) -> str | None:
        self._enter("find_machine", app_name=app_name, name=name)
        app = self.apps.get(app_name)
        if app is None:
            return None
        for machine in app.machines.values():
            if machine.name == name:
                return machine.id
        return None

    async def update_machine_image(
        self, app_name: str, machine_id: str, image: str, *, timeout_s: float | None = None
    ) -> ProviderResult:
        self._enter("update_machine_image", app_name=app_name, machine_id=machine_id, image=image)
        machine = self._app(app_name).machines[machine_id]
        machine.image = image
        machine.version += 1
        machine.state = "starting"
        self._polls[machine_id] = 0
        return ProviderResult(self._outcome("update_machine_image", False), resource_id=machine_id)

    async def get_machine_status(
        self, app_name: str, machine_id: str, *, timeout_s: float | None = None
    ) -> MachineStatus:
        self._enter("get_machine_status", app_name=app_name, machine_id=machine_id)
        machine = self._app(app_name).machines.get(machine_id)
        if machine is None:
            return MachineStatus(machine_id=machine_id, state="destroyed", checks_passing=False)
        if machine.state == "starting" and machine.image not in self.unhealthy_images:
            self._polls[machine_id] += 1
            if self._polls[machine_id] > self.polls_until_healthy:
                machine.state = "started"
        return MachineStatus(
            machine_id=machine_id, state=machine.state, image=machine.image, instance_id=machine.instance_id
        )

    async def set_machine_secrets(
        self, app_name: str, secrets: dict[str, str], *, timeout_s: float | None = None
    ) -> ProviderResult:
        self._enter("set_machine_secrets", app_name=app_name, keys=sorted(secrets))
        self._app(app_name).secrets.update(secrets)
        return ProviderResult(self._outcome("set_machine_secrets", False), resource_id=app_name)

    async def unset_machine_secrets(
        self, app_name: str, keys: list[str], *, timeout_s: float | None = None
    ) -> ProviderResult:
        self._enter("unset_machine_secrets", app_name=app_name, keys=list(keys))
        app = self._app(app_name)
        for key in keys:
            app.secrets.pop(key, None)
        return ProviderResult(self._outcome("unset_machine_secrets", False), resource_id=app_name)

    async def restart_machine(
        self,
        app_name: str,
        machine_id: str,
        *,
        env: dict[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> ProviderResult:
        self._enter("restart_machine", app_name=app_name, machine_id=machine_id, env_keys=sorted(env or {}))
        machine = self._app(app_name).machines[machine_id]
        if env:
            machine.env.update(env)
            machine.version += 1
        machine.restarts += 1
        machine.state = "started"
        return ProviderResult(self._outcome("restart_machine", False), resource_id=machine_id)

    async def stop_machine(self, app_name: str, machine_id: str, *, timeout_s: float | None = None) -> ProviderResult:
        self._enter("stop_machine", app_name=app_name, machine_id=machine_id)
        self._app(app_name).machines[machine_id].state = "stopped"
        return ProviderResult(self._outcome("stop_machine", False), resource_id=machine_id)

    async def start_machine(self, app_name: str, machine_id: str, *, timeout_s: float | None = None) -> ProviderResult:
        self._enter("start_machine", app_name=app_name, machine_id=machine_id)
        self._app(app_name).machines[machine_id].state = "started"
        return ProviderResult(self._outcome("start_machine", False), resource_id=machine_id)

    async def delete_app(self, app_name: str, *, timeout_s: float | None = None) -> ProviderResult:
        self._enter("delete_app", app_name=app_name)
        self.apps.pop(app_name, None)
        return ProviderResult(self._outcome("delete_app", False), resource_id=app_name)

    async def aclose(self) -> None:
        return None
