from __future__ import annotations

import argparse
import asyncio
import logging
import os
import random
from typing import Any

import httpx

from trustplane.core.logging import configure_logging


logger = logging.getLogger("edge_gateway_sim")

SAMPLE_USERS = [
    ("user-1", "ENGINEER"),
    ("user-2", "ENGINEER"),
    ("user-3", "ORG_ADMIN"),
    ("user-4", "SEC_ANALYST"),
    ("user-5", "VIEWER"),
]
DEVICE_TRUST_LEVELS = ["HIGH", "MEDIUM", "LOW", "UNTRUSTED"]
COUNTRIES = ["US", "GB", "CA", "DE", "FR", "CN", "RU", "JP"]
RESOURCES = [
    "ssh://internal.acme.com/server1",
    "ssh://internal.acme.com/server2",
    "https://app.acme.com/dashboard",
    "https://api.acme.com/v1/data",
    "rdp://internal.acme.com/desktop1",
    "vnc://internal.acme.com/monitor1",
]
# Telemetry for unmatched requests still needs a policy id.
DEFAULT_DENY_POLICY_ID = "default-deny"


def generate_access_request(rng: random.Random) -> dict[str, Any]:
    user_id, role = rng.choice(SAMPLE_USERS)
    return {
        "userId": user_id,
        "userRole": role,
        "deviceTrustLevel": rng.choice(DEVICE_TRUST_LEVELS),
        "country": rng.choice(COUNTRIES),
        "resource": rng.choice(RESOURCES),
    }


async def simulate_once(client: httpx.AsyncClient, rng: random.Random) -> None:
    access_request = generate_access_request(rng)
    response = await client.post("/v1/gateway/evaluate", json=access_request)
    response.raise_for_status()
    evaluation = response.json()["data"]
    policy_id = (evaluation["matched_policy_ids"] or [DEFAULT_DENY_POLICY_ID])[0]
    logger.info(
        "access_evaluated user_id=%s resource=%s country=%s device=%s decision=%s policy_id=%s",
        access_request["userId"],
        access_request["resource"],
        access_request["country"],
        access_request["deviceTrustLevel"],
        evaluation["decision"],
        policy_id,
    )
    telemetry = {
        "userId": access_request["userId"],
        "policyId": policy_id,
        "decision": evaluation["decision"],
        "resource": access_request["resource"],
        "country": access_request["country"],
        "deviceTrustLevel": access_request["deviceTrustLevel"],
    }
    recorded = await client.post("/v1/gateway/telemetry", json=telemetry)
    recorded.raise_for_status()


async def run(args: argparse.Namespace) -> None:
    rng = random.Random(args.seed)
    headers = {"X-API-Key": args.api_key}
    async with httpx.AsyncClient(base_url=args.base_url, headers=headers, timeout=10.0) as client:
        sent = 0
        while args.count <= 0 or sent < args.count:
            try:
                await simulate_once(client, rng)
            except httpx.HTTPError as exc:
                # Keep generating traffic; one failed request should not stop the agent.
                logger.warning("simulated_request_failed error=%s", exc)
            sent += 1
            await asyncio.sleep(rng.uniform(args.min_interval, args.max_interval))


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate synthetic edge gateway traffic")
    parser.add_argument("--base-url", default=os.getenv("TRUSTPLANE_URL", "http://localhost:8000"))
    parser.add_argument("--api-key", default=os.getenv("GATEWAY_API_KEY", "acme-gw-key-123"))
    parser.add_argument("--count", type=int, default=0, help="Requests to send; 0 runs forever")
    parser.add_argument("--min-interval", type=float, default=3.0)
    parser.add_argument("--max-interval", type=float, default=5.0)
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
