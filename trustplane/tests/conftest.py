from __future__ import annotations

import os
import tempfile
from typing import AsyncIterator, Iterator

# Point settings at a throwaway database before any trustplane module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="trustplane-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TRUSTPLANE_TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{_DB_DIR}/trustplane.db",
)
os.environ["POLICY_CACHE_USE_REDIS"] = "false"
os.environ["JWT_SECRET"] = "trustplane-test-secret-0123456789abcdef"
os.environ["STORE_RETRY_BACKOFF_MS"] = "1"

import pytest  # noqa: E402

from trustplane.apps.api.deps import clear_gateway_auth_cache  # noqa: E402
from trustplane.core.config import get_settings  # noqa: E402
from trustplane.domain.models import Base  # noqa: E402
from trustplane.persistence.db import engine  # noqa: E402
from trustplane.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> AsyncIterator[None]:
    # Every test starts from empty tables so rows never leak between cases.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> Iterator[None]:
    # Gateway identities and counters are process-global.
    clear_gateway_auth_cache()
    reset_telemetry()
    yield
    get_settings.cache_clear()
