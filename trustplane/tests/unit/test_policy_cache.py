from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from trustplane.core.errors import StoreUnavailableError
from trustplane.domain.policies import PolicyCondition, PolicySnapshot
from trustplane.services.policy.cache import PolicyCache
from trustplane.services.telemetry import counters_snapshot


class StubRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail_get = False
        self.fail_delete = False

    async def get(self, key: str):
        if self.fail_get:
            raise RedisConnectionError("down")
        return self.values.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.values[key] = value
        self.ttls[key] = ttl

    async def delete(self, key: str) -> int:
        if self.fail_delete:
            raise RedisConnectionError("down")
        return 1 if self.values.pop(key, None) is not None else 0


class CountingLoader:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.policies: dict[str, list[PolicySnapshot]] = {}

    async def __call__(self, org_id: str) -> list[PolicySnapshot]:
        self.calls.append(org_id)
        return list(self.policies.get(org_id, []))


def _snapshot(policy_id: str, org_id: str = "org-1", priority: int = 10) -> PolicySnapshot:
    return PolicySnapshot(
        id=policy_id,
        org_id=org_id,
        name=policy_id,
        priority=priority,
        effect="ALLOW",
        conditions=PolicyCondition(roles=["ENGINEER"]),
    )


@pytest.mark.asyncio
async def test_miss_populates_backend_with_ttl() -> None:
    redis = StubRedis()
    loader = CountingLoader()
    loader.policies["org-1"] = [_snapshot("p1")]
    cache = PolicyCache(loader, redis=redis, ttl_s=300, prefix="tp")

    first = await cache.get("org-1")
    second = await cache.get("org-1")

    assert [policy.id for policy in first] == ["p1"]
    assert [policy.id for policy in second] == ["p1"]
    assert loader.calls == ["org-1"]
    assert redis.ttls["tp:policies:org-1"] == 300
    counters = counters_snapshot()
    assert counters["policy_cache_misses_total"] == 1
    assert counters["policy_cache_hits_total"] == 1


@pytest.mark.asyncio
async def test_entries_are_keyed_per_org() -> None:
    redis = StubRedis()
    loader = CountingLoader()
    loader.policies["org-1"] = [_snapshot("p1")]
    loader.policies["org-2"] = [_snapshot("p2", org_id="org-2")]
    cache = PolicyCache(loader, redis=redis, ttl_s=300, prefix="tp")

    assert [policy.id for policy in await cache.get("org-1")] == ["p1"]
    assert [policy.id for policy in await cache.get("org-2")] == ["p2"]
    assert set(redis.values) == {"tp:policies:org-1", "tp:policies:org-2"}


@pytest.mark.asyncio
async def test_invalidate_forces_reload() -> None:
    redis = StubRedis()
    loader = CountingLoader()
    loader.policies["org-1"] = [_snapshot("p1")]
    cache = PolicyCache(loader, redis=redis, ttl_s=300, prefix="tp")
    await cache.get("org-1")

    loader.policies["org-1"] = [_snapshot("p1"), _snapshot("p2", priority=20)]
    await cache.invalidate("org-1")
    reloaded = await cache.get("org-1")

    assert [policy.id for policy in reloaded] == ["p1", "p2"]
    assert loader.calls == ["org-1", "org-1"]


@pytest.mark.asyncio
async def test_backend_read_failure_falls_back_to_store() -> None:
    redis = StubRedis()
    redis.fail_get = True
    loader = CountingLoader()
    loader.policies["org-1"] = [_snapshot("p1")]
    cache = PolicyCache(loader, redis=redis, ttl_s=300, prefix="tp")

    policies = await cache.get("org-1")

    assert [policy.id for policy in policies] == ["p1"]
    assert counters_snapshot()["policy_cache_fallbacks_total"] == 1


@pytest.mark.asyncio
async def test_unreadable_entry_is_treated_as_miss() -> None:
    redis = StubRedis()
    redis.values["tp:policies:org-1"] = "{not json"
    loader = CountingLoader()
    loader.policies["org-1"] = [_snapshot("p1")]
    cache = PolicyCache(loader, redis=redis, ttl_s=300, prefix="tp")

    policies = await cache.get("org-1")

    assert [policy.id for policy in policies] == ["p1"]
    assert loader.calls == ["org-1"]
    # The reload overwrites the corrupt entry.
    assert "p1" in redis.values["tp:policies:org-1"]


@pytest.mark.asyncio
async def test_failed_invalidation_bypasses_backend_until_ttl() -> None:
    now = {"t": 0.0}
    redis = StubRedis()
    loader = CountingLoader()
    loader.policies["org-1"] = [_snapshot("p1")]
    cache = PolicyCache(loader, redis=redis, ttl_s=60, prefix="tp", time_source=lambda: now["t"])
    await cache.get("org-1")

    redis.fail_delete = True
    loader.policies["org-1"] = [_snapshot("p1"), _snapshot("p2")]
    await cache.invalidate("org-1")

    # The stale backend entry is never served while the bypass is active.
    assert [policy.id for policy in await cache.get("org-1")] == ["p1", "p2"]
    assert counters_snapshot()["policy_cache_invalidation_failures_total"] == 1
    assert counters_snapshot()["policy_cache_bypass_total"] == 1

    now["t"] = 61.0
    await cache.get("org-1")
    assert loader.calls == ["org-1", "org-1"]


@pytest.mark.asyncio
async def test_local_map_expires_after_ttl() -> None:
    now = {"t": 100.0}
    loader = CountingLoader()
    loader.policies["org-1"] = [_snapshot("p1")]
    cache = PolicyCache(loader, ttl_s=30, time_source=lambda: now["t"])

    await cache.get("org-1")
    now["t"] = 129.0
    await cache.get("org-1")
    assert loader.calls == ["org-1"]

    now["t"] = 131.0
    await cache.get("org-1")
    assert loader.calls == ["org-1", "org-1"]


@pytest.mark.asyncio
async def test_local_map_invalidate() -> None:
    loader = CountingLoader()
    cache = PolicyCache(loader, ttl_s=30)
    await cache.get("org-1")
    await cache.invalidate("org-1")
    await cache.get("org-1")
    assert loader.calls == ["org-1", "org-1"]


@pytest.mark.asyncio
async def test_disabled_cache_always_reads_store() -> None:
    loader = CountingLoader()
    cache = PolicyCache(loader, redis=StubRedis(), enabled=False)
    await cache.get("org-1")
    await cache.get("org-1")
    assert loader.calls == ["org-1", "org-1"]


@pytest.mark.asyncio
async def test_store_errors_propagate_through_cache() -> None:
    async def failing_loader(_org_id: str):
        raise StoreUnavailableError("store down")

    cache = PolicyCache(failing_loader, redis=StubRedis(), ttl_s=30)
    with pytest.raises(StoreUnavailableError):
        await cache.get("org-1")
