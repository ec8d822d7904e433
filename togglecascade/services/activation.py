from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from togglecascade.core.errors import FeatureToggleError
from togglecascade.domain.events import FeatureToggleEvent
from togglecascade.persistence.db import SessionLocal
from togglecascade.persistence.repos import activations as activations_repo
from togglecascade.services.cascade_rules import RuleRegistry
from togglecascade.services.feature_cascade import CascadeResult, apply_transition
from togglecascade.services.resilience import RetryPolicy, is_transient_store_error, retry_async


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToggleOutcome:
    tenant_id: str
    feature_key: str
    previous_active: bool | None
    is_active: bool
    cascade: CascadeResult

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "feature_key": self.feature_key,
            "previous_active": self.previous_active,
            "is_active": self.is_active,
            "cascade": self.cascade.as_dict(),
        }


async def handle_activation_event(
    session: AsyncSession,
    event: FeatureToggleEvent,
    *,
    registry: RuleRegistry | None = None,
) -> CascadeResult:
    # For writers that persisted the flag themselves; they still own the commit.
    return await apply_transition(session, event, registry=registry)


async def set_feature_active(
    session: AsyncSession,
    tenant_id: str,
    feature_key: str,
    active: bool,
    *,
    registry: RuleRegistry | None = None,
) -> ToggleOutcome:
    """Write the activation flag and cascade in one transaction.

    The activation row is locked first so concurrent toggles of the same
    (tenant, feature) serialize. Any failure rolls back the flag write and
    every cascade step together.
    """
    try:
        _row, previous = await activations_repo.upsert_activation(
            session, tenant_id, feature_key, is_active=active
        )
        event = FeatureToggleEvent(
            tenant_id=tenant_id,
            feature_key=feature_key,
            previous_active=previous,
            new_active=active,
        )
        cascade = await apply_transition(session, event, registry=registry)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return ToggleOutcome(
        tenant_id=tenant_id,
        feature_key=feature_key,
        previous_active=previous,
        is_active=active,
        cascade=cascade,
    )


async def toggle_feature(
    tenant_id: str,
    feature_key: str,
    active: bool,
    *,
    registry: RuleRegistry | None = None,
    policy: RetryPolicy | None = None,
) -> ToggleOutcome:
    # Each attempt replays the whole transition on a fresh session; every step is idempotent.
    async def _attempt() -> ToggleOutcome:
        async with SessionLocal() as session:
            return await set_feature_active(
                session, tenant_id, feature_key, active, registry=registry
            )

    try:
        return await retry_async(_attempt, policy=policy, retryable=is_transient_store_error)
    except Exception as exc:
        # Store failures become FeatureToggleError; programming errors propagate unchanged.
        if not (isinstance(exc, SQLAlchemyError) or is_transient_store_error(exc)):
            raise
        logger.warning(
            "feature_toggle_failed tenant=%s feature=%s active=%s",
            tenant_id,
            feature_key,
            active,
            exc_info=exc,
        )
        raise FeatureToggleError(
            "Feature toggle failed and was rolled back",
            tenant_id=tenant_id,
            feature_key=feature_key,
        ) from exc
