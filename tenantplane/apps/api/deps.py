from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status

from tenantplane.apps.api.response import get_request_id
from tenantplane.services.access import ROLE_OWNER, Principal
from tenantplane.services.auth.api_keys import normalize_role, resolve_api_key
from tenantplane.services.control_plane import ControlPlane


logger = logging.getLogger(__name__)


def get_control_plane(request: Request) -> ControlPlane:
    # The app factory stores one wired control plane on app.state.
    return request.app.state.control_plane


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format for API key authentication.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Allow owner headers only when explicitly enabled for local dev.
    owner_id = request.headers.get("X-Owner-Id")
    if not owner_id:
        raise _auth_error("X-Owner-Id header is required in dev bypass mode")
    try:
        role = normalize_role(request.headers.get("X-Role", ROLE_OWNER))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(owner_id=owner_id, role=role, api_key_id="dev-bypass")


async def get_current_principal(
    request: Request,
    plane: ControlPlane = Depends(get_control_plane),
) -> Principal:
    settings = plane.settings
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    if not bearer_token or not settings.auth_enabled:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        if not settings.auth_enabled:
            raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        raise _auth_error("Missing API key")

    async with plane.session_factory() as session:
        principal = await resolve_api_key(session, bearer_token)
    if principal is None:
        logger.info("auth_rejected request_id=%s path=%s", get_request_id(request), request.url.path)
        raise _auth_error("Invalid API key")
    return principal
