from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class EventType:
    TENANT_CREATED = "tenant.created"
    STATUS_CHANGED = "tenant.status_changed"
    STEP_COMPLETED = "provisioning.step_completed"
    DEPLOY_STARTED = "deploy.started"
    DEPLOY_SUCCEEDED = "deploy.succeeded"
    DEPLOY_FAILED = "deploy.failed"
    ROTATION_STARTED = "credentials.rotation_started"
    ROTATED = "credentials.rotated"
    ROTATION_FAILED = "credentials.rotation_failed"
    SECRETS_RETRIEVED = "credentials.retrieved"
    MACHINE_RESTARTED = "machine.restarted"


@dataclass(frozen=True)
class ProvisioningEventView:
    # Detached snapshot of a persisted event; safe to hand to other tasks.
    tenant_id: str
    sequence_number: int
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime | None = None

    def as_wire(self) -> dict[str, Any]:
        # Payload keys never override the envelope fields.
        wire: dict[str, Any] = dict(self.payload)
        wire.update(
            {
                "type": self.event_type,
                "tenant_id": self.tenant_id,
                "sequence_number": self.sequence_number,
                "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            }
        )
        return wire
