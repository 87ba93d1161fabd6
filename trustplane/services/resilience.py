from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError

from trustplane.core.config import get_settings
from trustplane.core.errors import StoreUnavailableError
from trustplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, OSError, OperationalError, RedisError)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_cache_redis() -> Redis | None:
    # Reuse a shared Redis connection for the policy cache.
    settings = get_settings()
    if not settings.policy_cache_use_redis or not settings.redis_url:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("cache_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


async def close_cache_redis() -> None:
    global _redis_pool, _redis_loop
    if _redis_pool is None:
        return
    pool = _redis_pool
    _redis_pool = None
    _redis_loop = None
    try:
        await pool.aclose()
    except RedisError as exc:
        logger.warning("cache_redis_close_failed", exc_info=exc)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient connection/timeout failures by default.
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize store retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def store_read_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.store_timeout_ms,
        max_attempts=settings.store_retry_max_attempts,
        backoff_ms=settings.store_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> T:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or store_read_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("store_retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1


async def read_from_store(func: Callable[[], Awaitable[T]], *, operation: str) -> T:
    """Run a store read under the retry policy, mapping failures to STORE_UNAVAILABLE."""
    try:
        return await retry_async(func)
    except (asyncio.TimeoutError, TimeoutError) as exc:
        increment_counter("store_unavailable_total")
        logger.error("store_read_timeout operation=%s", operation, exc_info=exc)
        raise StoreUnavailableError(f"Policy store timed out during {operation}") from exc
    except SQLAlchemyError as exc:
        increment_counter("store_unavailable_total")
        logger.error("store_read_failed operation=%s", operation, exc_info=exc)
        raise StoreUnavailableError(f"Policy store unavailable during {operation}") from exc


async def bounded(awaitable: Awaitable[Any], *, timeout_ms: int) -> Any:
    # Bound a single wait without retrying; callers decide how to degrade.
    return await asyncio.wait_for(awaitable, timeout=max(timeout_ms, 1) / 1000.0)
