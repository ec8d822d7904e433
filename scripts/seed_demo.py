from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy import delete

from togglecascade.core.logging import configure_logging
from togglecascade.domain.models import (
    Base,
    Coupon,
    DeliveryDriver,
    DiningTable,
    FeatureDeactivatedItem,
    Promotion,
    TenantFeature,
)
from togglecascade.persistence.db import SessionLocal, engine
from togglecascade.services.cascade_rules import get_rule_registry


DEMO_TENANT_ID = "t1"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed a demo tenant with cascade target records")
    parser.add_argument("--tenant-id", default=DEMO_TENANT_ID)
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create tables from metadata (local sqlite/dev only; use migrations elsewhere)",
    )
    return parser


async def _seed(tenant_id: str, create_schema: bool) -> int:
    if create_schema:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    model_types = (FeatureDeactivatedItem, TenantFeature, Coupon, Promotion, DeliveryDriver, DiningTable)
    async with SessionLocal() as session:
        # Reset the demo tenant so repeated seeding is deterministic.
        for model in model_types:
            await session.execute(delete(model).where(model.tenant_id == tenant_id))
        for feature_key in get_rule_registry().feature_keys():
            session.add(TenantFeature(tenant_id=tenant_id, feature_key=feature_key, is_active=True))
        session.add_all(
            [
                Coupon(tenant_id=tenant_id, code="WELCOME10", is_active=True),
                Coupon(tenant_id=tenant_id, code="FREESHIP", is_active=True),
                Coupon(tenant_id=tenant_id, code="SUMMER25", is_active=True),
                Coupon(tenant_id=tenant_id, code="EXPIRED5", is_active=False),
                Promotion(tenant_id=tenant_id, name="Happy hour", is_active=True),
                DeliveryDriver(tenant_id=tenant_id, name="Ana", is_active=True, is_available=True),
                DeliveryDriver(tenant_id=tenant_id, name="Bruno", is_active=True, is_available=False),
                DiningTable(tenant_id=tenant_id, label="T1", seats=4, is_active=True),
                DiningTable(tenant_id=tenant_id, label="T2", seats=2, is_active=True),
            ]
        )
        await session.commit()
    await engine.dispose()
    print(f"Seeded demo tenant {tenant_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_seed(args.tenant_id, args.create_schema))
    except Exception as exc:  # noqa: BLE001 - surface seeding failures clearly
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
