from __future__ import annotations

from typing import Any

from tenantplane.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Bad request",
        "IMAGE_MISMATCH",
        "submitted image does not match the tenant's registry reference",
        details={"expected": "registry.fly.io/tenantplane-apps:tenant-abc"},
    ),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    403: _response("Forbidden", "AUTH_FORBIDDEN", "caller has no access to this tenant"),
    404: _response("Not found", "NOT_FOUND", "Tenant not found"),
    409: _response("Conflict", "CONFLICT", "a deploy is already in progress for tenant abc"),
    502: _response("Upstream failure", "PROVISIONING_FAILED", "compute provider step failed"),
    503: _response("Integration unavailable", "INTEGRATION_UNAVAILABLE", "compute.fly is temporarily unavailable"),
    504: _response("Deploy timeout", "DEPLOY_TIMEOUT", "machine did not report healthy within 180 seconds"),
}
