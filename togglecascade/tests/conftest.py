from __future__ import annotations

import os
import tempfile
from uuid import uuid4

# Point the engine at a throwaway sqlite file before any togglecascade module builds it.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), f'togglecascade-test-{uuid4().hex}.db')}",
)

import pytest  # noqa: E402

from togglecascade.core.config import get_settings  # noqa: E402
from togglecascade.domain.models import Base  # noqa: E402
from togglecascade.persistence.db import engine  # noqa: E402
from togglecascade.services.cascade_rules import get_rule_registry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Rebuild the schema per test so cascade state never leaks between tests.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_caches() -> None:
    yield
    get_settings.cache_clear()
    get_rule_registry.cache_clear()
