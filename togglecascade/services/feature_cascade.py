from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from togglecascade.domain.events import FeatureToggleEvent, Transition
from togglecascade.persistence.guards import require_tenant_id, tenant_column_predicate
from togglecascade.persistence.repos import snapshots as snapshots_repo
from togglecascade.services.cascade_rules import CascadeRule, RuleRegistry, get_rule_registry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleOutcome:
    # Per-rule counters so callers can report what a toggle touched.
    collection: str
    snapshotted: int = 0
    affected: int = 0
    cleared: int = 0


@dataclass(frozen=True)
class CascadeResult:
    tenant_id: str
    feature_key: str
    transition: Transition | None
    outcomes: tuple[RuleOutcome, ...] = ()

    @property
    def cascaded(self) -> bool:
        return self.transition is not None and bool(self.outcomes)

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "feature_key": self.feature_key,
            "transition": self.transition.value if self.transition else None,
            "outcomes": [
                {
                    "collection": outcome.collection,
                    "snapshotted": outcome.snapshotted,
                    "affected": outcome.affected,
                    "cleared": outcome.cleared,
                }
                for outcome in self.outcomes
            ],
        }


def transition_for(previous_active: bool | None, new_active: bool | None) -> Transition | None:
    # Only real flag flips dispatch; unchanged writes and first inserts do nothing.
    if previous_active is None or new_active is None:
        return None
    if previous_active and not new_active:
        return Transition.DEACTIVATING
    if not previous_active and new_active:
        return Transition.REACTIVATING
    return None


async def _deactivate_rule(
    session: AsyncSession,
    registry: RuleRegistry,
    rule: CascadeRule,
    tenant_id: str,
    feature_key: str,
) -> RuleOutcome:
    table = registry.table_for(rule)
    id_column = table.c[rule.id_column]
    tenant_scope = tenant_column_predicate(table, rule.tenant_column, tenant_id)
    active = [table.c[name].is_(True) for name in rule.active_attributes]

    # Snapshot before mutating so a crash in between leaves only a harmless extra row.
    snapshotted = await snapshots_repo.record_deactivated_from(
        session,
        tenant_id,
        feature_key,
        rule.collection,
        select(id_column.label("item_id")).where(tenant_scope, *active),
    )
    # Only records that are both active and snapshotted are switched off.
    update_result = await session.execute(
        update(table)
        .where(
            tenant_scope,
            *active,
            id_column.in_(
                snapshots_repo.snapshot_ids(tenant_id, feature_key, rule.collection, id_column.type)
            ),
        )
        .values({name: False for name in rule.deactivate_attributes})
    )
    return RuleOutcome(
        collection=rule.collection,
        snapshotted=snapshotted,
        affected=int(update_result.rowcount or 0),
    )


async def _restore_rule(
    session: AsyncSession,
    registry: RuleRegistry,
    rule: CascadeRule,
    tenant_id: str,
    feature_key: str,
) -> RuleOutcome:
    table = registry.table_for(rule)
    id_column = table.c[rule.id_column]
    # Only snapshotted ids are restored; records switched off independently stay off.
    update_result = await session.execute(
        update(table)
        .where(
            tenant_column_predicate(table, rule.tenant_column, tenant_id),
            id_column.in_(
                snapshots_repo.snapshot_ids(tenant_id, feature_key, rule.collection, id_column.type)
            ),
        )
        .values({name: True for name in rule.restore_attributes})
    )
    # Clear only after restoring so an interrupted reactivation can be replayed.
    cleared = await snapshots_repo.clear_snapshot(session, tenant_id, feature_key, rule.collection)
    return RuleOutcome(
        collection=rule.collection,
        affected=int(update_result.rowcount or 0),
        cleared=cleared,
    )


async def apply_transition(
    session: AsyncSession,
    event: FeatureToggleEvent,
    *,
    registry: RuleRegistry | None = None,
) -> CascadeResult:
    """Apply the cascade for one activation write inside the caller's transaction.

    The caller owns commit and rollback, so every rule for the event lands
    atomically or not at all. Writes that do not flip the flag, and features
    without registered rules, return a result with no outcomes and touch
    nothing.
    """
    require_tenant_id(event.tenant_id)
    transition = transition_for(event.previous_active, event.new_active)
    if transition is None:
        return CascadeResult(tenant_id=event.tenant_id, feature_key=event.feature_key, transition=None)

    registry = registry or get_rule_registry()
    rules = registry.rules_for(event.feature_key)
    if not rules:
        logger.debug(
            "feature_cascade_no_rules tenant=%s feature=%s transition=%s",
            event.tenant_id,
            event.feature_key,
            transition.value,
        )
        return CascadeResult(
            tenant_id=event.tenant_id, feature_key=event.feature_key, transition=transition
        )

    step = _deactivate_rule if transition is Transition.DEACTIVATING else _restore_rule
    outcomes = []
    for rule in rules:
        outcome = await step(session, registry, rule, event.tenant_id, event.feature_key)
        logger.info(
            "feature_cascade_applied tenant=%s feature=%s transition=%s collection=%s "
            "snapshotted=%s affected=%s cleared=%s",
            event.tenant_id,
            event.feature_key,
            transition.value,
            outcome.collection,
            outcome.snapshotted,
            outcome.affected,
            outcome.cleared,
        )
        outcomes.append(outcome)
    return CascadeResult(
        tenant_id=event.tenant_id,
        feature_key=event.feature_key,
        transition=transition,
        outcomes=tuple(outcomes),
    )
