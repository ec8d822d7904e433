from __future__ import annotations

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from togglecascade.persistence.db import get_session
from togglecascade.services.cascade_rules import RuleRegistry, get_rule_registry


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_registry() -> RuleRegistry:
    # Overridable in tests through app.dependency_overrides.
    return get_rule_registry()
