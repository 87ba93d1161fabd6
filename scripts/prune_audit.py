from __future__ import annotations

import argparse
import asyncio

from trustplane.persistence.db import SessionLocal
from trustplane.services.maintenance import prune_audit_logs, prune_idempotency_records


async def prune(retention_days: int | None, include_idempotency: bool) -> None:
    async with SessionLocal() as session:
        deleted = await prune_audit_logs(session, retention_days=retention_days)
        print(f"pruned_audit_logs={deleted}")
        if include_idempotency:
            expired = await prune_idempotency_records(session)
            print(f"pruned_idempotency_records={expired}")
        await session.commit()


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune audit logs past the retention window")
    parser.add_argument("--retention-days", type=int, default=None, help="Override AUDIT_RETENTION_DAYS")
    parser.add_argument("--idempotency", action="store_true", help="Also drop expired idempotency records")
    args = parser.parse_args()
    asyncio.run(prune(args.retention_days, args.idempotency))


if __name__ == "__main__":
    main()
