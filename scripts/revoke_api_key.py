from __future__ import annotations

import argparse
import asyncio
import sys

from tenantplane.persistence.db import SessionLocal
from tenantplane.services.audit import AuditLog
from tenantplane.services.auth.api_keys import revoke_api_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Revoke an owner API key by id")
    parser.add_argument("key_id", help="API key id to revoke")
    return parser


async def _revoke_key(key_id: str) -> int:
    # Revoked rows are kept so audit history still resolves the key.
    async with SessionLocal() as session:
        revoked = await revoke_api_key(session, key_id)
        await session.commit()
    if not revoked:
        print(f"API key {key_id} not found or already revoked", file=sys.stderr)
        return 1

    await AuditLog(SessionLocal).record(
        tenant_id=None,
        actor_type="system",
        actor_id="revoke_api_key",
        event_type="auth.api_key.revoked",
        outcome="success",
        metadata={"key_id": key_id},
    )
    print(f"Revoked API key {key_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args.key_id))
    except Exception as exc:  # noqa: BLE001 - surface database failures clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
