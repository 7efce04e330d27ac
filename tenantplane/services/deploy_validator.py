from __future__ import annotations

from dataclasses import dataclass
import hmac
import logging

from tenantplane.core.errors import ProviderConfigError, ValidationError


logger = logging.getLogger(__name__)

IMAGE_MISMATCH = "IMAGE_MISMATCH"


@dataclass(frozen=True)
class RegistryConfig:
    host: str
    repository: str
    username: str
    push_token: str | None


def image_tag(tenant_id: str) -> str:
    return f"tenant-{tenant_id}"


class DeployValidator:
    """Security gate between the shared registry and a tenant's machine.

    The only image a tenant may run is ``{host}/{repository}:tenant-{id}``.
    The submitted reference must equal it byte for byte; nothing is
    normalized, trimmed, lower-cased or resolved.
    """

    def __init__(self, registry: RegistryConfig) -> None:
        self._registry = registry

    def expected_image_reference(self, tenant_id: str) -> str:
        return f"{self._registry.host}/{self._registry.repository}:{image_tag(tenant_id)}"

    def validate(self, tenant_id: str, submitted_image_reference: str) -> str:
        expected = self.expected_image_reference(tenant_id)
        submitted = submitted_image_reference if isinstance(submitted_image_reference, str) else ""
        # compare_digest on bytes: exact equality without a timing side channel.
        if not hmac.compare_digest(submitted.encode("utf-8"), expected.encode("utf-8")):
            logger.warning("deploy_image_rejected tenant_id=%s", tenant_id)
            raise ValidationError(
                "submitted image does not match the tenant's registry image",
                code=IMAGE_MISMATCH,
            )
        return expected

    def registry_token(self, tenant_id: str) -> dict[str, str]:
        if not self._registry.push_token:
            raise ProviderConfigError("REGISTRY_PUSH_TOKEN is not configured")
        return {
            "registry": self._registry.host,
            "username": self._registry.username,
            "token": self._registry.push_token,
            "repository": self._registry.repository,
            "tag": image_tag(tenant_id),
        }
