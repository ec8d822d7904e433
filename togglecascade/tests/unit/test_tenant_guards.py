from __future__ import annotations

import pytest

from togglecascade.core.config import get_settings
from togglecascade.domain.events import FeatureToggleEvent
from togglecascade.persistence.guards import TenantPredicateError
from togglecascade.persistence.repos import activations as activations_repo
from togglecascade.persistence.repos import snapshots as snapshots_repo
from togglecascade.services.feature_cascade import apply_transition


def _enable_guard(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REQUIRE_TENANT_PREDICATE", "true")
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_snapshot_repo_requires_tenant_predicate(monkeypatch: pytest.MonkeyPatch) -> None:
    _enable_guard(monkeypatch)
    with pytest.raises(TenantPredicateError):
        await snapshots_repo.list_snapshot(None, "", "coupons", "coupons")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await snapshots_repo.clear_snapshot(None, "", "coupons", "coupons")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await snapshots_repo.record_deactivated(None, "", "coupons", "coupons", "c1")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await snapshots_repo.count_snapshot(None, "", "coupons", "coupons")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await snapshots_repo.list_stale_snapshots(None, "")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_activation_repo_requires_tenant_predicate(monkeypatch: pytest.MonkeyPatch) -> None:
    _enable_guard(monkeypatch)
    with pytest.raises(TenantPredicateError):
        await activations_repo.list_activations(None, None)  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await activations_repo.get_activation(None, None, "coupons")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await activations_repo.upsert_activation(None, "", "coupons", is_active=False)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_cascade_requires_tenant_predicate(monkeypatch: pytest.MonkeyPatch) -> None:
    _enable_guard(monkeypatch)
    event = FeatureToggleEvent(tenant_id="", feature_key="coupons", previous_active=True, new_active=False)
    with pytest.raises(TenantPredicateError):
        await apply_transition(None, event)  # type: ignore[arg-type]
