from __future__ import annotations

from typing import Iterable

from sqlalchemy import Select, String, cast, delete, func, literal, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.types import TypeEngine

from togglecascade.domain.models import FeatureDeactivatedItem, TenantFeature
from togglecascade.persistence.db import dialect_insert
from togglecascade.persistence.guards import require_tenant_id, tenant_predicate


_SNAPSHOT_KEY = ("tenant_id", "feature_key", "table_name", "item_id")
# Four bind parameters per row keeps a batch well under asyncpg's 32767 limit.
_BATCH_ROWS = 1000


def _scope(tenant_id: str, feature_key: str, collection: str) -> tuple[object, ...]:
    return (
        tenant_predicate(FeatureDeactivatedItem, tenant_id),
        FeatureDeactivatedItem.feature_key == feature_key,
        FeatureDeactivatedItem.table_name == collection,
    )


def _inserted(result) -> int:
    return max(int(result.rowcount or 0), 0)


async def record_deactivated(
    session: AsyncSession,
    tenant_id: str,
    feature_key: str,
    collection: str,
    record_id: str,
) -> None:
    # Idempotent: an existing entry for the same key tuple is left unchanged.
    await record_deactivated_many(session, tenant_id, feature_key, collection, [record_id])


async def record_deactivated_many(
    session: AsyncSession,
    tenant_id: str,
    feature_key: str,
    collection: str,
    record_ids: Iterable[str],
) -> int:
    """Snapshot a batch of record ids, skipping ones already snapshotted.

    Returns the number of ids submitted. Rows skipped by the unique constraint
    still count, since after this call a matching entry exists for every id.
    """
    require_tenant_id(tenant_id)
    unique_ids = [str(record_id) for record_id in dict.fromkeys(record_ids)]
    for start in range(0, len(unique_ids), _BATCH_ROWS):
        rows = [
            {
                "tenant_id": tenant_id,
                "feature_key": feature_key,
                "table_name": collection,
                "item_id": record_id,
            }
            for record_id in unique_ids[start : start + _BATCH_ROWS]
        ]
        stmt = (
            dialect_insert(session, FeatureDeactivatedItem.__table__)
            .values(rows)
            .on_conflict_do_nothing(index_elements=list(_SNAPSHOT_KEY))
        )
        await session.execute(stmt)
    return len(unique_ids)


async def record_deactivated_from(
    session: AsyncSession,
    tenant_id: str,
    feature_key: str,
    collection: str,
    record_ids: Select,
) -> int:
    """Snapshot every id produced by ``record_ids`` in one INSERT ... SELECT.

    ``record_ids`` selects a single column labelled ``item_id``. The ids never
    travel through Python, so the statement size does not grow with the
    collection. Returns the number of new snapshot rows.
    """
    require_tenant_id(tenant_id)
    source = record_ids.subquery()
    rows = select(
        literal(tenant_id, String),
        literal(feature_key, String),
        literal(collection, String),
        cast(source.c.item_id, String),
    )
    stmt = (
        dialect_insert(session, FeatureDeactivatedItem.__table__)
        .from_select(list(_SNAPSHOT_KEY), rows)
        .on_conflict_do_nothing(index_elements=list(_SNAPSHOT_KEY))
    )
    result = await session.execute(stmt)
    return _inserted(result)


def snapshot_ids(
    tenant_id: str,
    feature_key: str,
    collection: str,
    id_type: TypeEngine | None = None,
) -> Select:
    # Subquery of snapshotted ids, cast back to the target id column's type.
    item_id = FeatureDeactivatedItem.item_id
    column = item_id if id_type is None or isinstance(id_type, String) else cast(item_id, id_type)
    return select(column).where(*_scope(tenant_id, feature_key, collection))


async def list_snapshot(
    session: AsyncSession, tenant_id: str, feature_key: str, collection: str
) -> list[str]:
    require_tenant_id(tenant_id)
    # Restoration is order-independent, so no ORDER BY.
    result = await session.execute(
        select(FeatureDeactivatedItem.item_id).where(*_scope(tenant_id, feature_key, collection))
    )
    return list(result.scalars().all())


async def count_snapshot(
    session: AsyncSession, tenant_id: str, feature_key: str, collection: str
) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(func.count())
        .select_from(FeatureDeactivatedItem)
        .where(*_scope(tenant_id, feature_key, collection))
    )
    return int(result.scalar() or 0)


async def clear_snapshot(
    session: AsyncSession, tenant_id: str, feature_key: str, collection: str
) -> int:
    require_tenant_id(tenant_id)
    # Deleting an empty set is a success with zero rows affected.
    result = await session.execute(
        delete(FeatureDeactivatedItem)
        .where(*_scope(tenant_id, feature_key, collection))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_stale_snapshots(session: AsyncSession, tenant_id: str) -> list[tuple[str, str, int]]:
    """Report snapshot rows whose feature is currently active.

    These are left behind when a reactivation crashed between restore and
    clear. They are consumed by the next deactivate/reactivate cycle, so this
    only reports (feature_key, table_name, count) for diagnostics.
    """
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(
            FeatureDeactivatedItem.feature_key,
            FeatureDeactivatedItem.table_name,
            func.count(),
        )
        .join(
            TenantFeature,
            (TenantFeature.tenant_id == FeatureDeactivatedItem.tenant_id)
            & (TenantFeature.feature_key == FeatureDeactivatedItem.feature_key),
        )
        .where(
            tenant_predicate(FeatureDeactivatedItem, tenant_id),
            TenantFeature.is_active.is_(True),
        )
        .group_by(FeatureDeactivatedItem.feature_key, FeatureDeactivatedItem.table_name)
        .order_by(FeatureDeactivatedItem.feature_key, FeatureDeactivatedItem.table_name)
    )
    return [(str(row[0]), str(row[1]), int(row[2])) for row in result.all()]
