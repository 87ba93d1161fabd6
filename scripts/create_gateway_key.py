from __future__ import annotations

import argparse
import asyncio
import sys

from trustplane.persistence.db import SessionLocal
from trustplane.services.auth.gateway_keys import GatewayIdentityResolver
from trustplane.services.audit import record_event


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Register an edge gateway and print its API key")
    parser.add_argument("--org", required=True, help="Organization id")
    parser.add_argument("--gateway-id", required=True, help="Gateway id, unique within the org")
    parser.add_argument("--name", required=True, help="Human-readable gateway name")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    resolver = GatewayIdentityResolver()
    async with SessionLocal() as session:
        gateway, raw_key = await resolver.register_gateway(
            session,
            org_id=args.org,
            gateway_id=args.gateway_id,
            name=args.name,
        )
        # Record key issuance for security investigations.
        await record_event(
            session=session,
            org_id=gateway.org_id,
            user_id="create_gateway_key",
            action="GATEWAY_REGISTERED",
            resource=gateway.id,
            status="SUCCESS",
            details={"gatewayId": gateway.id, "keyPrefix": gateway.key_prefix},
            commit=True,
            best_effort=False,
        )

    print("Gateway registered:")
    print(f"  org_id: {gateway.org_id}")
    print(f"  gateway_id: {gateway.id}")
    print(f"  key_prefix: {gateway.key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_gateway_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
