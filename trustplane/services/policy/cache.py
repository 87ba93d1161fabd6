from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from pydantic import TypeAdapter, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from trustplane.core.config import get_settings
from trustplane.domain.policies import PolicySnapshot
from trustplane.persistence.guards import require_org_id
from trustplane.services.resilience import bounded
from trustplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PolicyLoader = Callable[[str], Awaitable[list[PolicySnapshot]]]
RedisFactory = Callable[[], Awaitable[Redis | None]]

_SNAPSHOTS = TypeAdapter(list[PolicySnapshot])
# Backend faults that degrade to a store read instead of failing evaluation.
_BACKEND_ERRORS = (RedisError, OSError, TimeoutError)


class PolicyCache:
    """Read-through cache of per-organization policy sets.

    Entries live in Redis when a backend is available and in an in-process TTL
    map otherwise. Entries are keyed strictly by organization id and expire
    after ``ttl_s``; writes call :meth:`invalidate` before they are
    acknowledged. Backend faults never fail a read: the loader (the policy
    store) is consulted directly and a warning is logged.
    """

    def __init__(
        self,
        loader: PolicyLoader,
        *,
        redis: Redis | None = None,
        redis_factory: RedisFactory | None = None,
        ttl_s: int | None = None,
        prefix: str | None = None,
        timeout_ms: int | None = None,
        enabled: bool | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._loader = loader
        self._redis = redis
        self._redis_factory = redis_factory
        self._ttl_s = ttl_s if ttl_s is not None else settings.policy_cache_ttl_s
        self._prefix = prefix if prefix is not None else settings.policy_cache_prefix
        self._timeout_ms = timeout_ms if timeout_ms is not None else settings.cache_timeout_ms
        self._enabled = enabled if enabled is not None else settings.policy_cache_enabled
        self._time = time_source or time.monotonic
        self._local: dict[str, tuple[float, list[PolicySnapshot]]] = {}
        # Orgs whose backend entry could not be invalidated, mapped to expiry.
        self._tombstones: dict[str, float] = {}

    @property
    def ttl_s(self) -> int:
        return self._ttl_s

    def key(self, org_id: str) -> str:
        return f"{self._prefix}:policies:{org_id}"

    async def _backend(self) -> Redis | None:
        if self._redis is not None:
            return self._redis
        if self._redis_factory is None:
            return None
        return await self._redis_factory()

    def _tombstoned(self, org_id: str) -> bool:
        expires_at = self._tombstones.get(org_id)
        if expires_at is None:
            return False
        if self._time() >= expires_at:
            self._tombstones.pop(org_id, None)
            return False
        return True

    async def get(self, org_id: str) -> list[PolicySnapshot]:
        # Return the org policy set in store order; the engine applies precedence.
        require_org_id(org_id)
        if not self._enabled:
            return await self._loader(org_id)
        if self._tombstoned(org_id):
            increment_counter("policy_cache_bypass_total")
            return await self._loader(org_id)

        redis = await self._backend()
        if redis is None:
            return await self._get_local(org_id)

        cached = await self._read_backend(redis, org_id)
        if cached is not None:
            increment_counter("policy_cache_hits_total")
            return cached
        increment_counter("policy_cache_misses_total")
        policies = await self._loader(org_id)
        await self._write_backend(redis, org_id, policies)
        return policies

    async def _get_local(self, org_id: str) -> list[PolicySnapshot]:
        entry = self._local.get(org_id)
        now = self._time()
        if entry is not None and entry[0] > now:
            increment_counter("policy_cache_hits_total")
            return list(entry[1])
        increment_counter("policy_cache_misses_total")
        policies = await self._loader(org_id)
        self._local[org_id] = (self._time() + self._ttl_s, list(policies))
        return policies

    async def _read_backend(self, redis: Redis, org_id: str) -> list[PolicySnapshot] | None:
        try:
            raw = await bounded(redis.get(self.key(org_id)), timeout_ms=self._timeout_ms)
        except _BACKEND_ERRORS as exc:
            increment_counter("policy_cache_fallbacks_total")
            logger.warning("policy_cache_read_failed org_id=%s error=%s", org_id, type(exc).__name__)
            return None
        if raw is None:
            return None
        try:
            return _SNAPSHOTS.validate_json(raw)
        except ValidationError:
            # Unreadable entries are treated as a miss and overwritten by the reload.
            increment_counter("policy_cache_fallbacks_total")
            logger.warning("policy_cache_entry_unreadable org_id=%s", org_id)
            return None

    async def _write_backend(self, redis: Redis, org_id: str, policies: list[PolicySnapshot]) -> None:
        payload = _SNAPSHOTS.dump_json(policies).decode("utf-8")
        try:
            await bounded(redis.setex(self.key(org_id), self._ttl_s, payload), timeout_ms=self._timeout_ms)
        except _BACKEND_ERRORS as exc:
            logger.warning("policy_cache_write_failed org_id=%s error=%s", org_id, type(exc).__name__)

    async def invalidate(self, org_id: str) -> None:
        # Drop the org entry before a write is acknowledged; never raises on backend faults.
        require_org_id(org_id)
        self._local.pop(org_id, None)
        if not self._enabled:
            return
        redis = await self._backend()
        if redis is None:
            return
        try:
            await bounded(redis.delete(self.key(org_id)), timeout_ms=self._timeout_ms)
        except _BACKEND_ERRORS as exc:
            self._tombstones[org_id] = self._time() + self._ttl_s
            increment_counter("policy_cache_invalidation_failures_total")
            logger.warning(
                "policy_cache_invalidate_failed org_id=%s error=%s bypass_s=%s",
                org_id,
                type(exc).__name__,
                self._ttl_s,
            )
