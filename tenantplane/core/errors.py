from __future__ import annotations

from typing import Any


class TenantPlaneError(Exception):
    """Base error for the control plane."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class ValidationError(TenantPlaneError):
    """Rejected input: image mismatch or malformed request. Never retried."""

    code = "VALIDATION_ERROR"


class ProvisioningError(TenantPlaneError):
    """A compute-provider step failed after the client's own retries."""

    code = "PROVISIONING_FAILED"


class ProviderRequestError(ProvisioningError):
    """The provider rejected the request as invalid (4xx, not conflict)."""

    code = "PROVIDER_REQUEST_INVALID"

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ProviderUnavailableError(ProvisioningError):
    """Transient provider failures exhausted the retry budget."""

    code = "PROVIDER_UNAVAILABLE"


class DeployTimeoutError(ProvisioningError):
    """The machine never reported healthy within the deploy deadline."""

    code = "DEPLOY_TIMEOUT"


class ConflictError(TenantPlaneError):
    """Another deploy/rotation/provisioning is in flight, or a record already exists."""

    code = "CONFLICT"


class NotFoundError(TenantPlaneError):
    """Unknown tenant, provider or token (including consumed tokens)."""

    code = "NOT_FOUND"


class RotationError(TenantPlaneError):
    """Credential rotation stopped partway; the whole rotation must be retried."""

    code = "ROTATION_FAILED"

    def __init__(self, message: str, *, step: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.step = step


class StateError(TenantPlaneError):
    """Illegal lifecycle transition attempted."""

    code = "INVALID_STATE_TRANSITION"


class AccessDeniedError(TenantPlaneError):
    """Caller lacks ownership/access rights over the tenant."""

    code = "AUTH_FORBIDDEN"


class WebhookSignatureError(TenantPlaneError):
    """Webhook payload failed signature verification."""

    code = "WEBHOOK_SIGNATURE_INVALID"


class SubscriberOverflowError(TenantPlaneError):
    """An event subscriber fell too far behind and was disconnected."""

    code = "SUBSCRIBER_OVERFLOW"


class IntegrationUnavailableError(TenantPlaneError):
    """Circuit breaker is open for an external integration."""

    code = "INTEGRATION_UNAVAILABLE"


class SecretsConfigurationError(TenantPlaneError):
    """Missing or invalid secret sealing configuration."""

    code = "SECRETS_CONFIG_INVALID"


class ProviderConfigError(TenantPlaneError):
    """Missing or invalid provider configuration."""

    code = "PROVIDER_CONFIG_INVALID"
