"""
Entitlement Schemas

What the tenant's plan, add-ons and toggles grant, as seen by the tenant.
"""
from pydantic import BaseModel
from typing import Dict, List, Optional
from datetime import datetime


class FeatureInfo(BaseModel):
    code: str
    name: str
    description: str
    category: str


class FeatureCatalogResponse(BaseModel):
    features: List[FeatureInfo]
    limits: List[str]


class MyPlanResponse(BaseModel):
    plan_id: Optional[str] = None
    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price_monthly: int = 0
    currency: str = "IDR"
    billing_status: str
    trial_ends_at: Optional[datetime] = None


class MyFeaturesResponse(BaseModel):
    features: List[str]
    wildcard: bool


class LimitInfo(BaseModel):
    limit: int
    unlimited: bool


class MyLimitsResponse(BaseModel):
    limits: Dict[str, LimitInfo]


class MyAddonResponse(BaseModel):
    id: str
    addon_id: str
    code: str
    name: str
    addon_type: str
    value: Dict
    started_at: datetime
    expires_at: Optional[datetime]
    active: bool


class FeatureCheckResponse(BaseModel):
    feature: str
    enabled: bool


class LimitCheckResponse(BaseModel):
    limit_name: str
    limit: int
    current: int
    remaining: int
    unlimited: bool
    within_limit: bool
