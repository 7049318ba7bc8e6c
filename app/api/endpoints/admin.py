"""
Platform Admin Endpoints

Super-admin management of plans, add-ons, tenants and feature toggles.

SECURITY: every route requires a super admin principal (role super_admin
and no tenant). Anything that changes what a tenant is entitled to
invalidates the entitlement cache before returning.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from app.database import get_db
from app.models.plan import Addon, AddonType, FeatureToggle, Plan, TenantAddon
from app.models.tenant import Tenant, TenantStatus
from app.schemas.admin import (
    AddonCreate,
    AddonResponse,
    PlanCreate,
    PlanResponse,
    TenantAddonAssign,
    TenantAddonResponse,
    TenantCreate,
    TenantPlanAssign,
    TenantResponse,
    TenantUpdate,
    ToggleResponse,
    ToggleSet,
)
from app.api.deps import Principal, require_super_admin
from app.core.clock import utcnow
from app.core.exceptions import ConflictError, NotFoundError, TenantNotFoundError, ValidationError
from app.core.features import BOOST_KEYS, LIMIT_NAMES, invalid_feature_codes, is_valid_feature_code
from app.services.entitlements import get_entitlement_resolver
from app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_tenant(db: Session, tenant_id: str) -> Tenant:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        raise TenantNotFoundError(tenant_id)
    return tenant


def _get_plan_by_code(db: Session, code: str) -> Plan:
    plan = db.query(Plan).filter(Plan.code == code, Plan.is_active.is_(True)).first()
    if not plan:
        raise NotFoundError(f"Plan not found: {code}")
    return plan


def _validate_plan(data: PlanCreate) -> None:
    bad = invalid_feature_codes(data.features)
    if bad:
        raise ValidationError(f"Unknown feature codes: {', '.join(bad)}")
    unknown_limits = [name for name in data.limits if name not in LIMIT_NAMES]
    if unknown_limits:
        raise ValidationError(f"Unknown limits: {', '.join(unknown_limits)}")
    if any(value < -1 for value in data.limits.values()):
        raise ValidationError("Limits must be -1 (unlimited) or non-negative")


def _validate_addon(data: AddonCreate) -> None:
    if data.addon_type == AddonType.FEATURE:
        code = (data.value or {}).get("feature")
        if not code or not is_valid_feature_code(code):
            raise ValidationError("Feature add-on needs a valid value.feature code")
    else:
        if not data.value:
            raise ValidationError("Limit boost add-on needs at least one boost")
        for key, amount in data.value.items():
            if key not in BOOST_KEYS:
                raise ValidationError(f"Unknown boost: {key}")
            if not isinstance(amount, int) or amount < -1:
                raise ValidationError(f"Boost {key} must be an integer >= -1")


# ============================================================================
# Plans
# ============================================================================

@router.get("/plans", response_model=List[PlanResponse])
async def list_plans(
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    return db.query(Plan).order_by(Plan.sort_order.asc(), Plan.code.asc()).all()


@router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    plan_data: PlanCreate,
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    _validate_plan(plan_data)
    if db.query(Plan.id).filter(Plan.code == plan_data.code).first():
        raise ConflictError(f"Plan code already exists: {plan_data.code}")

    plan = Plan(**plan_data.model_dump())
    db.add(plan)
    db.commit()
    db.refresh(plan)

    logger.info(f"Plan created: {plan.code} by {principal.user_id}")
    return plan


# ============================================================================
# Add-ons
# ============================================================================

@router.get("/addons", response_model=List[AddonResponse])
async def list_addons(
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    return db.query(Addon).order_by(Addon.code.asc()).all()


@router.post("/addons", response_model=AddonResponse, status_code=status.HTTP_201_CREATED)
async def create_addon(
    addon_data: AddonCreate,
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    _validate_addon(addon_data)
    if db.query(Addon.id).filter(Addon.code == addon_data.code).first():
        raise ConflictError(f"Add-on code already exists: {addon_data.code}")

    addon = Addon(**addon_data.model_dump())
    db.add(addon)
    db.commit()
    db.refresh(addon)

    logger.info(f"Add-on created: {addon.code} by {principal.user_id}")
    return addon


# ============================================================================
# Tenants
# ============================================================================

@router.get("/tenants", response_model=List[TenantResponse])
async def list_tenants(
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    return db.query(Tenant).order_by(Tenant.created_at.asc()).all()


@router.post("/tenants", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    tenant_data: TenantCreate,
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    if db.query(Tenant.id).filter(Tenant.slug == tenant_data.slug).first():
        raise ConflictError(f"Tenant slug already exists: {tenant_data.slug}")

    plan = _get_plan_by_code(db, tenant_data.plan_code) if tenant_data.plan_code else None
    tenant = Tenant(
        name=tenant_data.name,
        slug=tenant_data.slug,
        status=tenant_data.status,
        plan_id=plan.id if plan else None,
        settings=tenant_data.settings,
        trial_ends_at=tenant_data.trial_ends_at,
    )
    db.add(tenant)
    db.commit()
    db.refresh(tenant)

    logger.info(f"Tenant created: {tenant.slug} ({tenant.id}) by {principal.user_id}")
    return tenant


@router.patch("/tenants/{tenant_id}", response_model=TenantResponse)
async def update_tenant(
    tenant_id: str,
    tenant_data: TenantUpdate,
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    """Status changes take effect on the next request; TenantMiddleware re-reads the row."""
    tenant = _get_tenant(db, tenant_id)

    update_data = tenant_data.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        setattr(tenant, field, value)
    if update_data.get("status") == TenantStatus.DELETED and tenant.deleted_at is None:
        tenant.deleted_at = utcnow()

    db.commit()
    db.refresh(tenant)
    get_entitlement_resolver().invalidate(tenant.id)

    logger.info(f"Tenant updated: {tenant.slug} {sorted(update_data)} by {principal.user_id}")
    return tenant


@router.put("/tenants/{tenant_id}/plan", response_model=TenantResponse)
async def assign_plan(
    tenant_id: str,
    body: TenantPlanAssign,
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    tenant = _get_tenant(db, tenant_id)
    plan = _get_plan_by_code(db, body.plan_code)

    tenant.plan_id = plan.id
    db.commit()
    db.refresh(tenant)
    get_entitlement_resolver().invalidate(tenant.id)

    logger.info(f"Tenant {tenant.slug} moved to plan {plan.code} by {principal.user_id}")
    return tenant


@router.post("/tenants/{tenant_id}/addons", response_model=TenantAddonResponse,
             status_code=status.HTTP_201_CREATED)
async def assign_addon(
    tenant_id: str,
    body: TenantAddonAssign,
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    tenant = _get_tenant(db, tenant_id)
    addon = db.query(Addon).filter(Addon.code == body.addon_code, Addon.is_active.is_(True)).first()
    if not addon:
        raise NotFoundError(f"Add-on not found: {body.addon_code}")

    plan_code = tenant.plan.code if tenant.plan is not None else None
    if not addon.is_available_for(plan_code):
        raise ValidationError(f"Add-on {addon.code} is not available for plan {plan_code}")

    started_at = body.started_at or utcnow()
    if body.expires_at is not None and body.expires_at <= started_at:
        raise ValidationError("expires_at must be after started_at")

    tenant_addon = TenantAddon(
        tenant_id=tenant.id,
        addon_id=addon.id,
        started_at=started_at,
        expires_at=body.expires_at,
    )
    db.add(tenant_addon)
    db.commit()
    db.refresh(tenant_addon)
    get_entitlement_resolver().invalidate(tenant.id)

    logger.info(f"Add-on {addon.code} assigned to {tenant.slug} by {principal.user_id}")
    return tenant_addon


@router.delete("/tenants/{tenant_id}/addons/{tenant_addon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_addon(
    tenant_id: str,
    tenant_addon_id: str,
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    tenant_addon = db.query(TenantAddon).filter(
        TenantAddon.id == tenant_addon_id,
        TenantAddon.tenant_id == tenant_id,
    ).first()
    if not tenant_addon:
        raise NotFoundError("Tenant add-on not found")

    db.delete(tenant_addon)
    db.commit()
    get_entitlement_resolver().invalidate(tenant_id)

    logger.info(f"Tenant add-on {tenant_addon_id} removed from {tenant_id} by {principal.user_id}")
    return None


# ============================================================================
# Feature toggles
# ============================================================================

@router.put("/toggles", response_model=ToggleResponse)
async def set_toggle(
    body: ToggleSet,
    principal: Principal = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    """Upsert a toggle. A global toggle change clears the whole cache."""
    if not is_valid_feature_code(body.code):
        raise ValidationError(f"Unknown feature code: {body.code}")
    if body.tenant_id:
        _get_tenant(db, body.tenant_id)

    query = db.query(FeatureToggle).filter(FeatureToggle.code == body.code)
    if body.tenant_id:
        query = query.filter(FeatureToggle.tenant_id == body.tenant_id)
    else:
        query = query.filter(FeatureToggle.tenant_id.is_(None))
    toggle = query.first()

    if toggle is None:
        toggle = FeatureToggle(code=body.code, tenant_id=body.tenant_id or None)
        db.add(toggle)
    toggle.is_enabled = body.is_enabled
    toggle.conditions = body.conditions
    db.commit()
    db.refresh(toggle)

    resolver = get_entitlement_resolver()
    if toggle.tenant_id:
        resolver.invalidate(toggle.tenant_id)
    else:
        resolver.invalidate_all()

    logger.info(
        f"Toggle {toggle.code}={toggle.is_enabled} ({toggle.tenant_id or 'global'}) by {principal.user_id}"
    )
    return toggle
