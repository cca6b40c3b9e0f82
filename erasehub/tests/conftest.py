from __future__ import annotations

import os
import tempfile

# Point every store at throwaway SQLite files before any erasehub module builds its engine.
_TEST_ROOT = tempfile.mkdtemp(prefix="erasehub-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT}/shared.db"
os.environ["PRIVATE_CLOUD_ENCRYPTION_KEY"] = "erasehub-test-encryption-secret"
os.environ["PRIVATE_CLOUD_ALLOWED_KINDS"] = "mysql,postgresql,sqlite"
os.environ["AUTH_ENABLED"] = "true"
os.environ["AUTH_DEV_BYPASS"] = "false"

import pytest  # noqa: E402

from erasehub.apps.api import deps  # noqa: E402
from erasehub.core.config import get_settings  # noqa: E402
from erasehub.domain.models import Base  # noqa: E402
from erasehub.persistence.db import engine  # noqa: E402
from erasehub.services import telemetry  # noqa: E402
from erasehub.services.private_cloud import migration  # noqa: E402
from erasehub.services.private_cloud.routing import dispose_private_engines  # noqa: E402


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings overrides, auth cache, locks and counters must not leak across tests.
    yield
    get_settings.cache_clear()
    deps.clear_auth_cache()
    migration._tenant_locks.clear()
    telemetry.reset()


@pytest.fixture
async def shared_store() -> None:
    # Fresh shared schema per test; SQLite files make this cheap.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await dispose_private_engines()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
