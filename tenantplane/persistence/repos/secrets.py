from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import TenantSecrets
from tenantplane.persistence.dialect import insert_for


async def get_secrets(session: AsyncSession, tenant_id: str) -> TenantSecrets | None:
    result = await session.execute(
        select(TenantSecrets)
        .where(TenantSecrets.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def insert_secrets(session: AsyncSession, **values: Any) -> bool:
    # Insert-if-absent: returns False when the tenant already has secrets.
    stmt = insert_for(session, TenantSecrets).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=[TenantSecrets.tenant_id])
    result = await session.execute(stmt)
    return int(result.rowcount or 0) == 1


async def consume_retrieval_token(
    session: AsyncSession,
    tenant_id: str,
    token_hash: str,
) -> tuple[str, str] | None:
    # One conditional UPDATE clears the token and returns the sealed values; no read-then-write.
    result = await session.execute(
        update(TenantSecrets)
        .where(
            TenantSecrets.tenant_id == tenant_id,
            TenantSecrets.retrieval_token_hash == token_hash,
        )
        .values(
            retrieval_token_hash=None,
            retrieval_token_sealed=None,
            retrieved_at=datetime.now(timezone.utc),
        )
        .returning(TenantSecrets.database_url_sealed, TenantSecrets.signing_secret_sealed)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def replace_material(
    session: AsyncSession,
    tenant_id: str,
    *,
    database_url_sealed: str,
    signing_secret_sealed: str,
    retrieval_token_hash: str,
    retrieval_token_sealed: str,
) -> None:
    # Rotated material gets a fresh one-time token; any unconsumed old token dies with it.
    await session.execute(
        update(TenantSecrets)
        .where(TenantSecrets.tenant_id == tenant_id)
        .values(
            database_url_sealed=database_url_sealed,
            signing_secret_sealed=signing_secret_sealed,
            retrieval_token_hash=retrieval_token_hash,
            retrieval_token_sealed=retrieval_token_sealed,
            retrieved_at=None,
            rotated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )


async def delete_secrets(session: AsyncSession, tenant_id: str) -> None:
    await session.execute(delete(TenantSecrets).where(TenantSecrets.tenant_id == tenant_id))
