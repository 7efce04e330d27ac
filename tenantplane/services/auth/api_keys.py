from __future__ import annotations

from datetime import datetime, timezone
import secrets
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import OwnerApiKey
from tenantplane.services.access import ROLE_OPERATOR, ROLE_OWNER, Principal
from tenantplane.services.crypto import hash_token


ROLES = frozenset({ROLE_OWNER, ROLE_OPERATOR})


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Embed the key id in the token so operators can trace secrets safely.
    resolved_id = key_id or uuid4().hex
    raw_key = f"tpk_{resolved_id}_{secrets.token_urlsafe(32)}"
    return resolved_id, raw_key, raw_key[:12], hash_token(raw_key)


async def create_api_key(
    session: AsyncSession,
    *,
    owner_id: str,
    role: str = ROLE_OWNER,
    name: str | None = None,
) -> tuple[OwnerApiKey, str]:
    # The raw key is returned once and never stored.
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    row = OwnerApiKey(
        id=key_id,
        owner_id=owner_id,
        key_prefix=key_prefix,
        key_hash=key_hash,
        role=normalize_role(role),
        name=name,
    )
    session.add(row)
    await session.flush()
    return row, raw_key


async def resolve_api_key(session: AsyncSession, raw_key: str) -> Principal | None:
    result = await session.execute(
        select(OwnerApiKey).where(
            OwnerApiKey.key_hash == hash_token(raw_key),
            OwnerApiKey.revoked_at.is_(None),
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return Principal(owner_id=row.owner_id, role=row.role, api_key_id=row.id)


async def revoke_api_key(session: AsyncSession, key_id: str) -> bool:
    result = await session.execute(
        update(OwnerApiKey)
        .where(OwnerApiKey.id == key_id, OwnerApiKey.revoked_at.is_(None))
        .values(revoked_at=datetime.now(timezone.utc))
    )
    return (result.rowcount or 0) > 0
