from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from togglecascade.apps.api.deps import get_db, get_registry
from togglecascade.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from togglecascade.apps.api.response import SuccessEnvelope, success_response
from togglecascade.domain.models import TenantFeature
from togglecascade.persistence.repos import activations as activations_repo
from togglecascade.persistence.repos import snapshots as snapshots_repo
from togglecascade.services.activation import toggle_feature
from togglecascade.services.cascade_rules import RuleRegistry

router = APIRouter(tags=["features"], responses=DEFAULT_ERROR_RESPONSES)


class ActivationResponse(BaseModel):
    tenant_id: str
    feature_key: str
    is_active: bool
    updated_at: str | None


class FeatureToggleRequest(BaseModel):
    is_active: bool


class RuleOutcomeResponse(BaseModel):
    collection: str
    snapshotted: int
    affected: int
    cleared: int


class CascadeResponse(BaseModel):
    tenant_id: str
    feature_key: str
    transition: str | None
    outcomes: list[RuleOutcomeResponse]


class FeatureToggleResponse(BaseModel):
    tenant_id: str
    feature_key: str
    previous_active: bool | None
    is_active: bool
    cascade: CascadeResponse

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "tenant_id": "tenant_123",
                    "feature_key": "coupons",
                    "previous_active": True,
                    "is_active": False,
                    "cascade": {
                        "tenant_id": "tenant_123",
                        "feature_key": "coupons",
                        "transition": "deactivating",
                        "outcomes": [
                            {"collection": "coupons", "snapshotted": 3, "affected": 3, "cleared": 0}
                        ],
                    },
                }
            ]
        }
    }


class StaleSnapshotResponse(BaseModel):
    feature_key: str
    collection: str
    count: int


class CascadeRuleResponse(BaseModel):
    feature_key: str
    collection: str
    active_attributes: list[str]
    deactivate_attributes: list[str]
    restore_attributes: list[str]
    tenant_column: str
    id_column: str


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _to_activation(row: TenantFeature) -> ActivationResponse:
    return ActivationResponse(
        tenant_id=row.tenant_id,
        feature_key=row.feature_key,
        is_active=bool(row.is_active),
        updated_at=_iso(row.updated_at),
    )


@router.get(
    "/cascade-rules",
    response_model=SuccessEnvelope[list[CascadeRuleResponse]] | list[CascadeRuleResponse],
)
async def list_cascade_rules(
    request: Request,
    registry: RuleRegistry = Depends(get_registry),
) -> dict:
    rules = [CascadeRuleResponse(**rule.as_dict()).model_dump() for rule in registry.all_rules()]
    return success_response(request=request, data=rules)


@router.get(
    "/features/{tenant_id}",
    response_model=SuccessEnvelope[list[ActivationResponse]] | list[ActivationResponse],
)
async def list_tenant_features(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        rows = await activations_repo.list_activations(db, tenant_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing features") from exc
    return success_response(request=request, data=[_to_activation(row).model_dump() for row in rows])


@router.get(
    "/snapshots/{tenant_id}",
    response_model=SuccessEnvelope[list[StaleSnapshotResponse]] | list[StaleSnapshotResponse],
)
async def list_stale_snapshots(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Diagnostics only; stale rows are consumed by the next off/on cycle.
    try:
        stale = await snapshots_repo.list_stale_snapshots(db, tenant_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing snapshots") from exc
    data = [
        StaleSnapshotResponse(feature_key=feature_key, collection=collection, count=count).model_dump()
        for feature_key, collection, count in stale
    ]
    return success_response(request=request, data=data)


@router.get(
    "/features/{tenant_id}/{feature_key}",
    response_model=SuccessEnvelope[ActivationResponse] | ActivationResponse,
)
async def get_tenant_feature(
    tenant_id: str,
    feature_key: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        row = await activations_repo.get_activation(db, tenant_id, feature_key)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching feature") from exc
    if row is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "FEATURE_NOT_FOUND", "message": "Feature activation not found"},
        )
    return success_response(request=request, data=_to_activation(row).model_dump())


@router.patch(
    "/features/{tenant_id}/{feature_key}",
    response_model=SuccessEnvelope[FeatureToggleResponse] | FeatureToggleResponse,
)
async def patch_tenant_feature(
    tenant_id: str,
    feature_key: str,
    request: Request,
    payload: FeatureToggleRequest,
    registry: RuleRegistry = Depends(get_registry),
) -> dict:
    # FeatureToggleError is mapped to a 503 envelope by the app exception handlers.
    outcome = await toggle_feature(tenant_id, feature_key, payload.is_active, registry=registry)
    data = FeatureToggleResponse(**outcome.as_dict()).model_dump()
    return success_response(request=request, data=data)
