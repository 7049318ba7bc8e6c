"""
Platform Admin Schemas

Plans, add-ons, tenants and feature toggles managed by super admins.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime


class PlanCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50, pattern="^[a-z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    price_monthly: int = Field(0, ge=0)
    currency: str = Field("IDR", min_length=3, max_length=3)
    limits: Dict[str, int] = Field(default_factory=dict)
    features: List[str] = Field(default_factory=list)
    is_public: bool = True
    sort_order: int = 0


class PlanResponse(PlanCreate):
    id: str
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class AddonCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50, pattern="^[a-z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    price: int = Field(0, ge=0)
    currency: str = Field("IDR", min_length=3, max_length=3)
    billing_cycle: str = Field("monthly", pattern="^(one_time|monthly|yearly)$")
    addon_type: str = Field(..., pattern="^(limit_boost|feature)$")
    value: Dict[str, Any] = Field(default_factory=dict)
    available_for_plans: List[str] = Field(default_factory=list)


class AddonResponse(AddonCreate):
    id: str
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class TenantCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=2, max_length=100, pattern="^[a-z0-9][a-z0-9-]*$")
    plan_code: Optional[str] = None
    status: str = Field("active", pattern="^(active|pending)$")
    settings: Dict[str, Any] = Field(default_factory=dict)
    trial_ends_at: Optional[datetime] = None


class TenantUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    status: Optional[str] = Field(None, pattern="^(active|suspended|pending|deleted)$")
    billing_status: Optional[str] = Field(None, pattern="^(active|overdue|suspended)$")
    settings: Optional[Dict[str, Any]] = None
    trial_ends_at: Optional[datetime] = None


class TenantResponse(BaseModel):
    id: str
    name: str
    slug: str
    status: str
    billing_status: str
    plan_id: Optional[str]
    trial_ends_at: Optional[datetime]
    settings: Dict[str, Any]
    created_at: datetime
    deleted_at: Optional[datetime]

    class Config:
        from_attributes = True


class TenantPlanAssign(BaseModel):
    plan_code: str = Field(..., min_length=1)


class TenantAddonAssign(BaseModel):
    addon_code: str = Field(..., min_length=1)
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class TenantAddonResponse(BaseModel):
    id: str
    tenant_id: str
    addon_id: str
    started_at: datetime
    expires_at: Optional[datetime]

    class Config:
        from_attributes = True


class ToggleSet(BaseModel):
    """Global toggle when tenant_id is omitted."""
    code: str = Field(..., min_length=1, max_length=100)
    tenant_id: Optional[str] = None
    is_enabled: bool
    conditions: Optional[Dict[str, Any]] = None


class ToggleResponse(ToggleSet):
    id: str
    updated_at: datetime

    class Config:
        from_attributes = True
