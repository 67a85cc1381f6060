from __future__ import annotations

import os
import tempfile

# Settings are read at import time by persistence.db, so the test environment
# must be in place before any tenantadmin module is imported.
_DB_DIR = tempfile.mkdtemp(prefix="tenantadmin-tests-")
_DB_PATH = os.path.join(_DB_DIR, "tenantadmin.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["WORKFLOW_EXECUTION_MODE"] = "inline"
os.environ["RELATIONSHIP_BACKEND"] = "sql"
os.environ["AUTH_ENABLED"] = "true"
os.environ["AUTH_DEV_BYPASS"] = "false"
os.environ["AUTH_JWT_SECRET"] = "tenantadmin-test-secret-with-enough-length"
os.environ["AUTH_JWT_ALGORITHMS"] = "HS256"
os.environ["WORKFLOW_RETRY_INITIAL_INTERVAL_S"] = "0.01"
os.environ["WORKFLOW_RETRY_MAX_INTERVAL_S"] = "0.05"
os.environ.pop("NOTIFY_WEBHOOK_URL", None)

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402

from tenantadmin.core.config import get_settings  # noqa: E402
from tenantadmin.domain.models import Base  # noqa: E402
from tenantadmin.persistence.db import engine  # noqa: E402
from tenantadmin.services.authz.relationships import set_relationship_store  # noqa: E402
from tenantadmin.services.telemetry import reset_counters  # noqa: E402
from tenantadmin.services.workflows.engine import set_workflow_engine  # noqa: E402


_sync_engine = create_engine(f"sqlite:///{_DB_PATH}")
Base.metadata.create_all(_sync_engine)


@pytest.fixture(autouse=True)
def clean_database() -> None:
    # Each test starts from empty tables; children first for FK order.
    with _sync_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())
    yield


@pytest.fixture(autouse=True)
def reset_singletons() -> None:
    get_settings.cache_clear()
    set_relationship_store(None)
    set_workflow_engine(None)
    reset_counters()
    yield
    set_relationship_store(None)
    set_workflow_engine(None)
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # aiosqlite connections are bound to the loop that opened them.
    yield
    await engine.dispose()
