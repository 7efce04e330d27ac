from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class CallOutcome(str, Enum):
    OK = "ok"
    # The resource already existed; callers treat this as success.
    ALREADY_EXISTS = "already_exists"
    # The call timed out; it may or may not have taken effect.
    UNKNOWN = "unknown"


class IpKind(str, Enum):
    SHARED_V4 = "shared_v4"
    V6 = "v6"


@dataclass(frozen=True)
class ProviderResult:
    outcome: CallOutcome
    resource_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome in (CallOutcome.OK, CallOutcome.ALREADY_EXISTS)


@dataclass(frozen=True)
class MachineSpec:
    name: str
    image: str
    region: str
    memory_mb: int
    env: dict[str, str]
    volume_id: str | None
    mount_path: str
    internal_port: int


# Machine states that can never become healthy without operator action.
TERMINAL_MACHINE_STATES = frozenset({"failed", "destroying", "destroyed"})


@dataclass(frozen=True)
class MachineStatus:
    machine_id: str
    state: str
    image: str | None = None
    checks_passing: bool = True
    # Changes every time the machine is replaced with a new config or image.
    instance_id: str | None = None

    @property
    def healthy(self) -> bool:
        return self.state == "started" and self.checks_passing

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_MACHINE_STATES


class ComputeProviderClient(Protocol):
    """Idempotent-at-the-call-site operations against the compute provider.

    Every mutating call returns a ProviderResult. Invalid requests raise
    ProviderRequestError, exhausted transient failures raise
    ProviderUnavailableError, and a timed-out call returns CallOutcome.UNKNOWN.
    """

    async def create_app(self, app_name: str, *, timeout_s: float | None = None) -> ProviderResult:
        ...

    async def create_volume(
        self, app_name: str, *, name: str, region: str, size_gb: int, timeout_s: float | None = None
    ) -> ProviderResult:
        ...

    async def allocate_ip(self, app_name: str, *, kind: IpKind, timeout_s: float | None = None) -> ProviderResult:
        ...

    async def add_certificate(self, app_name: str, hostname: str, *, timeout_s: float | None = None) -> ProviderResult:
        ...

    async def create_machine(
        self, app_name: str, spec: MachineSpec, *, timeout_s: float | None = None
    ) -> ProviderResult:
        ...

    async def find_machine(self, app_name: str, name: str, *, timeout_s: float | None = None) -> str | None:
        ...

    async def update_machine_image(
        self, app_name: str, machine_id: str, image: str, *, timeout_s: float | None = None
    ) -> ProviderResult:
        ...

    async def get_machine_status(
        self, app_name: str, machine_id: str, *, timeout_s: float | None = None
    ) -> MachineStatus:
        ...

    async def set_machine_secrets(
        self, app_name: str, secrets: dict[str, str], *, timeout_s: float | None = None
    ) -> ProviderResult:
        ...

    async def unset_machine_secrets(
        self, app_name: str, keys: list[str], *, timeout_s: float | None = None
    ) -> ProviderResult:
        ...

    async def restart_machine(
        self,
        app_name: str,
        machine_id: str,
        *,
        env: dict[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> ProviderResult:
        ...

    async def stop_machine(self, app_name: str, machine_id: str, *, timeout_s: float | None = None) -> ProviderResult:
        ...

    async def start_machine(self, app_name: str, machine_id: str, *, timeout_s: float | None = None) -> ProviderResult:
        ...

    async def delete_app(self, app_name: str, *, timeout_s: float | None = None) -> ProviderResult:
        ...

    async def aclose(self) -> None:
        ...
