from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from togglecascade.domain.models import TenantFeature
from togglecascade.persistence.db import dialect_insert
from togglecascade.persistence.guards import require_tenant_id, tenant_predicate


async def get_activation(
    session: AsyncSession,
    tenant_id: str,
    feature_key: str,
    *,
    for_update: bool = False,
) -> TenantFeature | None:
    require_tenant_id(tenant_id)
    # Row lock serializes concurrent toggles of the same (tenant, feature).
    stmt = select(TenantFeature).where(
        tenant_predicate(TenantFeature, tenant_id),
        TenantFeature.feature_key == feature_key,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_activations(session: AsyncSession, tenant_id: str) -> list[TenantFeature]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(TenantFeature)
        .where(tenant_predicate(TenantFeature, tenant_id))
        .order_by(TenantFeature.feature_key)
    )
    return list(result.scalars().all())


async def upsert_activation(
    session: AsyncSession,
    tenant_id: str,
    feature_key: str,
    *,
    is_active: bool,
) -> tuple[TenantFeature, bool | None]:
    """Write the activation flag and return (row, previous flag).

    The previous flag is None when this call created the row. Creation goes
    through INSERT ... ON CONFLICT DO NOTHING, so concurrent first writes
    serialize on the row lock below instead of failing on the primary key.
    """
    require_tenant_id(tenant_id)
    created = await session.execute(
        dialect_insert(session, TenantFeature.__table__)
        .values(tenant_id=tenant_id, feature_key=feature_key, is_active=is_active)
        .on_conflict_do_nothing(index_elements=["tenant_id", "feature_key"])
    )
    row = await get_activation(session, tenant_id, feature_key, for_update=True)
    if row is None:
        raise RuntimeError(f"Activation row for {tenant_id}/{feature_key} vanished after insert")
    if int(created.rowcount or 0) > 0:
        return row, None
    previous = bool(row.is_active)
    if previous != is_active:
        row.is_active = is_active
        await session.flush()
    return row, previous
