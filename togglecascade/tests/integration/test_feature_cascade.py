from __future__ import annotations

import pytest
from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, event, insert, select, update

from togglecascade.domain.events import FeatureToggleEvent, Transition
from togglecascade.domain.models import (
    Coupon,
    DeliveryDriver,
    FeatureDeactivatedItem,
    Promotion,
    TenantFeature,
)
from togglecascade.persistence.db import SessionLocal, engine
from togglecascade.persistence.repos import snapshots as snapshots_repo
from togglecascade.services import feature_cascade
from togglecascade.services.activation import handle_activation_event, set_feature_active
from togglecascade.services.cascade_rules import CascadeRule, RuleRegistry
from togglecascade.tests.utils.records import (
    coupon_states,
    feature_active,
    seed_coupons,
    seed_feature,
    set_coupon_active,
    snapshot_count,
)


async def _toggle(tenant_id: str, feature_key: str, active: bool, registry: RuleRegistry | None = None):
    async with SessionLocal() as session:
        return await set_feature_active(session, tenant_id, feature_key, active, registry=registry)


@pytest.mark.asyncio
async def test_disable_and_reenable_coupons_scenario() -> None:
    await seed_feature("T1", "coupons")
    c1, c2, c3 = await seed_coupons("T1", True, True, True)

    outcome = await _toggle("T1", "coupons", False)
    assert outcome.previous_active is True
    assert outcome.cascade.transition is Transition.DEACTIVATING
    assert outcome.cascade.outcomes[0].affected == 3
    assert await coupon_states("T1") == {c1: False, c2: False, c3: False}
    assert await snapshot_count("T1", "coupons") == 3

    (c4,) = await seed_coupons("T1", True)

    outcome = await _toggle("T1", "coupons", True)
    assert outcome.cascade.transition is Transition.REACTIVATING
    assert outcome.cascade.outcomes[0].cleared == 3
    assert await coupon_states("T1") == {c1: True, c2: True, c3: True, c4: True}
    assert await snapshot_count("T1", "coupons") == 0
    assert await feature_active("T1", "coupons") is True


@pytest.mark.asyncio
async def test_reactivation_leaves_independently_disabled_records_off() -> None:
    await seed_feature("t1", "coupons")
    active_id, already_off = await seed_coupons("t1", True, False)

    await _toggle("t1", "coupons", False)
    await _toggle("t1", "coupons", True)

    states = await coupon_states("t1")
    assert states[active_id] is True
    assert states[already_off] is False


@pytest.mark.asyncio
async def test_record_enabled_while_feature_off_stays_enabled() -> None:
    await seed_feature("t1", "coupons")
    snapshotted, outsider = await seed_coupons("t1", True, False)

    await _toggle("t1", "coupons", False)
    await set_coupon_active(outsider, True)
    await _toggle("t1", "coupons", True)

    assert await coupon_states("t1") == {snapshotted: True, outsider: True}


@pytest.mark.asyncio
async def test_record_disabled_while_feature_off_is_revived_only_if_snapshotted() -> None:
    await seed_feature("t1", "coupons")
    (snapshotted,) = await seed_coupons("t1", True)

    await _toggle("t1", "coupons", False)
    # Created and then switched off by a user while the feature was off.
    (outsider,) = await seed_coupons("t1", False)

    await _toggle("t1", "coupons", True)
    states = await coupon_states("t1")
    assert states[snapshotted] is True
    assert states[outsider] is False


@pytest.mark.asyncio
async def test_noop_write_touches_nothing() -> None:
    await seed_feature("t1", "coupons")
    (coupon_id,) = await seed_coupons("t1", True)

    outcome = await _toggle("t1", "coupons", True)

    assert outcome.previous_active is True
    assert outcome.cascade.transition is None
    assert outcome.cascade.outcomes == ()
    assert await coupon_states("t1") == {coupon_id: True}
    assert await snapshot_count("t1") == 0


@pytest.mark.asyncio
async def test_first_write_creates_row_without_cascade() -> None:
    (coupon_id,) = await seed_coupons("t1", True)

    outcome = await _toggle("t1", "coupons", False)

    assert outcome.previous_active is None
    assert outcome.cascade.transition is None
    assert await feature_active("t1", "coupons") is False
    assert await coupon_states("t1") == {coupon_id: True}


@pytest.mark.asyncio
async def test_unknown_feature_flips_flag_only() -> None:
    await seed_feature("t1", "loyalty_points")
    (coupon_id,) = await seed_coupons("t1", True)

    outcome = await _toggle("t1", "loyalty_points", False)

    assert outcome.cascade.transition is Transition.DEACTIVATING
    assert outcome.cascade.outcomes == ()
    assert await feature_active("t1", "loyalty_points") is False
    assert await coupon_states("t1") == {coupon_id: True}
    assert await snapshot_count("t1") == 0


@pytest.mark.asyncio
async def test_cascade_is_scoped_to_tenant() -> None:
    await seed_feature("t1", "coupons")
    await seed_feature("t2", "coupons")
    (mine,) = await seed_coupons("t1", True)
    (theirs,) = await seed_coupons("t2", True)

    await _toggle("t1", "coupons", False)

    assert await coupon_states("t1") == {mine: False}
    assert await coupon_states("t2") == {theirs: True}
    assert await snapshot_count("t2") == 0


@pytest.mark.asyncio
async def test_repeated_deactivation_does_not_duplicate_snapshots() -> None:
    await seed_feature("t1", "coupons")
    await seed_coupons("t1", True, True)
    event = FeatureToggleEvent(tenant_id="t1", feature_key="coupons", previous_active=True, new_active=False)

    async with SessionLocal() as session:
        await handle_activation_event(session, event)
        await session.commit()
    async with SessionLocal() as session:
        # Replaying the same event finds nothing active and keeps the snapshot intact.
        result = await handle_activation_event(session, event)
        await session.commit()

    assert result.outcomes[0].snapshotted == 0
    assert await snapshot_count("t1", "coupons") == 2


@pytest.mark.asyncio
async def test_drivers_availability_is_cleared_and_not_restored() -> None:
    await seed_feature("t1", "drivers")
    async with SessionLocal() as session:
        driver = DeliveryDriver(tenant_id="t1", name="Ana", is_active=True, is_available=True)
        session.add(driver)
        await session.commit()
        driver_id = driver.id

    await _toggle("t1", "drivers", False)
    async with SessionLocal() as session:
        row = await session.get(DeliveryDriver, driver_id)
        assert (row.is_active, row.is_available) == (False, False)

    await _toggle("t1", "drivers", True)
    async with SessionLocal() as session:
        row = await session.get(DeliveryDriver, driver_id)
        assert (row.is_active, row.is_available) == (True, False)
        items = await snapshots_repo.list_snapshot(session, "t1", "drivers", "delivery_drivers")
    assert items == []


@pytest.mark.asyncio
async def test_multi_rule_feature_cascades_every_collection() -> None:
    registry = RuleRegistry(
        [
            CascadeRule(feature_key="marketing", collection="coupons"),
            CascadeRule(feature_key="marketing", collection="promotions"),
        ]
    )
    await seed_feature("t1", "marketing")
    (coupon_id,) = await seed_coupons("t1", True)
    async with SessionLocal() as session:
        promotion = Promotion(tenant_id="t1", name="Happy hour", is_active=True)
        session.add(promotion)
        await session.commit()
        promotion_id = promotion.id

    outcome = await _toggle("t1", "marketing", False, registry)
    assert [item.collection for item in outcome.cascade.outcomes] == ["coupons", "promotions"]
    async with SessionLocal() as session:
        result = await session.execute(
            select(FeatureDeactivatedItem.table_name, FeatureDeactivatedItem.item_id).where(
                FeatureDeactivatedItem.feature_key == "marketing"
            )
        )
        rows = sorted(tuple(row) for row in result.all())
        assert rows == sorted([("coupons", coupon_id), ("promotions", promotion_id)])

    await _toggle("t1", "marketing", True, registry)
    async with SessionLocal() as session:
        assert (await session.get(Coupon, coupon_id)).is_active is True
        assert (await session.get(Promotion, promotion_id)).is_active is True
    assert await snapshot_count("t1") == 0


@pytest.mark.asyncio
async def test_failure_mid_cascade_rolls_back_flag_and_earlier_rules(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    registry = RuleRegistry(
        [
            CascadeRule(feature_key="marketing", collection="coupons"),
            CascadeRule(feature_key="marketing", collection="promotions"),
        ]
    )
    await seed_feature("t1", "marketing")
    (coupon_id,) = await seed_coupons("t1", True)

    original = feature_cascade._deactivate_rule
    calls = 0

    async def fail_on_second_rule(session, registry, rule, tenant_id, feature_key):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise RuntimeError("store went away")
        return await original(session, registry, rule, tenant_id, feature_key)

    monkeypatch.setattr(feature_cascade, "_deactivate_rule", fail_on_second_rule)

    with pytest.raises(RuntimeError):
        await _toggle("t1", "marketing", False, registry)

    assert await feature_active("t1", "marketing") is True
    assert await coupon_states("t1") == {coupon_id: True}
    assert await snapshot_count("t1") == 0


@pytest.mark.asyncio
async def test_stale_snapshot_is_consumed_by_next_cycle() -> None:
    await seed_feature("t1", "coupons")
    first, second = await seed_coupons("t1", True, True)
    await _toggle("t1", "coupons", False)

    # Simulate a reactivation that restored records and the flag but crashed before clearing.
    async with SessionLocal() as session:
        row = await session.get(TenantFeature, ("t1", "coupons"))
        row.is_active = True
        await session.execute(update(Coupon).where(Coupon.tenant_id == "t1").values(is_active=True))
        await session.commit()
        assert await snapshots_repo.list_stale_snapshots(session, "t1") == [("coupons", "coupons", 2)]

    await _toggle("t1", "coupons", False)
    assert await snapshot_count("t1", "coupons") == 2
    assert await coupon_states("t1") == {first: False, second: False}

    await _toggle("t1", "coupons", True)
    assert await coupon_states("t1") == {first: True, second: True}
    assert await snapshot_count("t1", "coupons") == 0


@pytest.mark.asyncio
async def test_large_collection_cascades_with_fixed_size_statements() -> None:
    await seed_feature("t1", "coupons")
    async with SessionLocal() as session:
        await session.execute(
            insert(Coupon),
            [{"tenant_id": "t1", "code": f"BULK{index}", "is_active": True} for index in range(2500)],
        )
        await session.commit()

    bound_counts: list[int] = []

    def capture(conn, cursor, statement, parameters, context, executemany) -> None:
        if not executemany:
            bound_counts.append(len(parameters or ()))

    event.listen(engine.sync_engine, "before_cursor_execute", capture)
    try:
        off = await _toggle("t1", "coupons", False)
        on = await _toggle("t1", "coupons", True)
    finally:
        event.remove(engine.sync_engine, "before_cursor_execute", capture)

    assert off.cascade.outcomes[0].snapshotted == 2500
    assert off.cascade.outcomes[0].affected == 2500
    assert on.cascade.outcomes[0].affected == 2500
    assert on.cascade.outcomes[0].cleared == 2500
    # Statement size stays independent of how many records the tenant holds.
    assert max(bound_counts) < 20
    assert set((await coupon_states("t1")).values()) == {True}


@pytest.mark.asyncio
async def test_integer_keyed_collection_round_trips() -> None:
    metadata = MetaData()
    legacy = Table(
        "legacy_tables",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("tenant_id", String, nullable=False),
        Column("is_active", Boolean, nullable=False),
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)
        await conn.execute(
            insert(legacy),
            [
                {"id": 7, "tenant_id": "t1", "is_active": True},
                {"id": 8, "tenant_id": "t1", "is_active": False},
                {"id": 9, "tenant_id": "t2", "is_active": True},
            ],
        )
    registry = RuleRegistry([CascadeRule(feature_key="legacy", collection="legacy_tables")], metadata=metadata)
    await seed_feature("t1", "legacy")

    try:
        await _toggle("t1", "legacy", False, registry)
        async with SessionLocal() as session:
            items = await snapshots_repo.list_snapshot(session, "t1", "legacy", "legacy_tables")
        assert items == ["7"]

        await _toggle("t1", "legacy", True, registry)
        async with engine.connect() as conn:
            result = await conn.execute(select(legacy.c.id, legacy.c.is_active).order_by(legacy.c.id))
            assert [tuple(row) for row in result.all()] == [(7, True), (8, False), (9, True)]
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(metadata.drop_all)
