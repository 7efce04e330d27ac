from __future__ import annotations

import argparse
import asyncio
import sys

from tenantplane.core.config import get_settings
from tenantplane.core.errors import ConflictError, RotationError
from tenantplane.core.logging import configure_logging
from tenantplane.persistence.db import SessionLocal
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.services.control_plane import build_control_plane


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Re-run credential rotations left pending by a failure")
    parser.add_argument("--limit", type=int, default=50, help="Maximum tenants to retry in one run")
    parser.add_argument("--dry-run", action="store_true", help="List pending tenants without rotating")
    return parser


async def _retry(args: argparse.Namespace) -> int:
    configure_logging()
    async with SessionLocal() as session:
        pending = await tenants_repo.list_rotation_pending(session, limit=args.limit)
    if args.dry_run:
        for tenant in pending:
            print(f"pending tenant_id={tenant.id} failed_step={tenant.rotation_failed_step}")
        return 0

    plane = build_control_plane(get_settings(), SessionLocal)
    failures = 0
    try:
        for tenant in pending:
            try:
                # Each retry rotates from scratch; a new retrieval link is issued to the owner.
                await plane.rotate_credentials(None, tenant.id)
                print(f"rotated tenant_id={tenant.id}")
            except (RotationError, ConflictError) as exc:
                failures += 1
                print(f"rotation_failed tenant_id={tenant.id} error={exc}", file=sys.stderr)
    finally:
        await plane.aclose()
    print(f"retried={len(pending)} failed={failures}")
    return 1 if failures else 0


def main() -> int:
    return asyncio.run(_retry(_build_parser().parse_args()))


if __name__ == "__main__":
    raise SystemExit(main())
