"""
Entitlement Endpoints

Read-only view of what the caller's tenant may use, and the public
feature catalog. Any authenticated tenant user may read their own
tenant's entitlements.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List

from app.database import get_db
from app.models.plan import TenantAddon
from app.models.tenant import Tenant
from app.schemas.entitlement import (
    FeatureCatalogResponse,
    FeatureCheckResponse,
    FeatureInfo,
    LimitCheckResponse,
    LimitInfo,
    MyAddonResponse,
    MyFeaturesResponse,
    MyLimitsResponse,
    MyPlanResponse,
)
from app.api.deps import get_current_tenant, get_tenant_id
from app.core.clock import utcnow
from app.core.exceptions import ValidationError
from app.core.features import FEATURE_ALL, FEATURE_CATALOG, LIMIT_NAMES
from app.services.entitlements import UNLIMITED, get_entitlement_resolver

router = APIRouter(tags=["entitlements"])


@router.get("/features", response_model=FeatureCatalogResponse)
async def feature_catalog():
    """Public catalog of feature codes and limit names."""
    return FeatureCatalogResponse(
        features=[FeatureInfo(**f._asdict()) for f in FEATURE_CATALOG if f.code != FEATURE_ALL],
        limits=list(LIMIT_NAMES),
    )


@router.get("/my/plan", response_model=MyPlanResponse)
async def my_plan(tenant: Tenant = Depends(get_current_tenant)):
    plan = tenant.plan
    if plan is None:
        return MyPlanResponse(billing_status=tenant.billing_status, trial_ends_at=tenant.trial_ends_at)
    return MyPlanResponse(
        plan_id=plan.id,
        code=plan.code,
        name=plan.name,
        description=plan.description,
        price_monthly=plan.price_monthly,
        currency=plan.currency,
        billing_status=tenant.billing_status,
        trial_ends_at=tenant.trial_ends_at,
    )


@router.get("/my/features", response_model=MyFeaturesResponse)
async def my_features(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    ent = get_entitlement_resolver().resolve(db, tenant_id)
    return MyFeaturesResponse(features=sorted(ent.feature_codes()), wildcard=ent.wildcard)


@router.get("/my/limits", response_model=MyLimitsResponse)
async def my_limits(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    ent = get_entitlement_resolver().resolve(db, tenant_id)
    names = set(LIMIT_NAMES) | set(ent.limits)
    return MyLimitsResponse(limits={
        name: LimitInfo(limit=ent.limit(name), unlimited=ent.limit(name) == UNLIMITED)
        for name in sorted(names)
    })


@router.get("/my/addons", response_model=List[MyAddonResponse])
async def my_addons(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    now = utcnow()
    rows = db.query(TenantAddon).filter(
        TenantAddon.tenant_id == tenant_id,
    ).order_by(TenantAddon.started_at.desc()).all()
    return [
        MyAddonResponse(
            id=ta.id,
            addon_id=ta.addon_id,
            code=ta.addon.code,
            name=ta.addon.name,
            addon_type=ta.addon.addon_type,
            value=dict(ta.addon.value or {}),
            started_at=ta.started_at,
            expires_at=ta.expires_at,
            active=ta.addon.is_active and ta.is_active_at(now),
        )
        for ta in rows
        if ta.addon is not None
    ]


@router.get("/check/feature", response_model=FeatureCheckResponse)
async def check_feature(
    feature: str = Query(..., min_length=1),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return FeatureCheckResponse(
        feature=feature,
        enabled=get_entitlement_resolver().has(db, tenant_id, feature),
    )


@router.get("/check/limit", response_model=LimitCheckResponse)
async def check_limit(
    limit: str = Query(..., min_length=1),
    current: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    if limit not in LIMIT_NAMES:
        raise ValidationError(f"Unknown limit: {limit}")
    ent = get_entitlement_resolver().resolve(db, tenant_id)
    value = ent.limit(limit)
    return LimitCheckResponse(
        limit_name=limit,
        limit=value,
        current=current,
        remaining=ent.remaining(limit, current),
        unlimited=value == UNLIMITED,
        within_limit=ent.within(limit, current),
    )
