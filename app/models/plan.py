"""
Plan, Add-on and Feature Toggle Models

The three global entitlement sources. Plans and add-ons are managed by
super admins; toggles are either global (tenant_id NULL) or per tenant.
"""
from sqlalchemy import (
    Column, String, Text, Boolean, DateTime, ForeignKey, Index, Integer, BigInteger, JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from app.core.clock import utcnow
from app.database import Base
import uuid


class Plan(Base):
    __tablename__ = "plans"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Money in minor units
    price_monthly = Column(BigInteger, default=0, nullable=False)
    currency = Column(String(3), default="IDR", nullable=False)

    # {"max_routers": 2, "max_clients": -1, ...}; -1 = unlimited
    limits = Column(JSON, nullable=False, default=dict)
    # ["radius_basic", "wa_gateway"] or ["*"]
    features = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, default=True, nullable=False)
    is_public = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Plan {self.code}>"


class AddonType:
    LIMIT_BOOST = "limit_boost"
    FEATURE = "feature"

    ALL = (LIMIT_BOOST, FEATURE)


class Addon(Base):
    __tablename__ = "addons"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    price = Column(BigInteger, default=0, nullable=False)
    currency = Column(String(3), default="IDR", nullable=False)
    billing_cycle = Column(String(20), default="monthly", nullable=False)  # one_time, monthly, yearly

    addon_type = Column(String(20), nullable=False)
    # limit_boost: {"add_routers": 5}; feature: {"feature": "wa_gateway"}
    value = Column(JSON, nullable=False, default=dict)
    # Plan codes this add-on may be attached to. Empty = any plan.
    available_for_plans = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Addon {self.code} ({self.addon_type})>"

    def is_available_for(self, plan_code) -> bool:
        plans = self.available_for_plans or []
        return not plans or (plan_code is not None and plan_code in plans)


class TenantAddon(Base):
    __tablename__ = "tenant_addons"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    addon_id = Column(
        String(36),
        ForeignKey("addons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    started_at = Column(DateTime, default=utcnow, nullable=False)
    # NULL = does not expire
    expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    tenant = relationship("Tenant", back_populates="addons")
    addon = relationship("Addon")

    __table_args__ = (
        Index('idx_tenant_addon_tenant_expiry', 'tenant_id', 'expires_at'),
    )

    def __repr__(self):
        return f"<TenantAddon tenant={self.tenant_id} addon={self.addon_id}>"

    def is_active_at(self, now) -> bool:
        if self.started_at and self.started_at > now:
            return False
        return self.expires_at is None or self.expires_at > now


class FeatureToggle(Base):
    __tablename__ = "feature_toggles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(100), nullable=False, index=True)

    # NULL = global toggle
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    is_enabled = Column(Boolean, default=True, nullable=False)
    # Optional rollout conditions, stored but not evaluated
    conditions = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('code', 'tenant_id', name='uq_feature_toggle_code_tenant'),
    )

    def __repr__(self):
        scope = self.tenant_id or "global"
        return f"<FeatureToggle {self.code}={self.is_enabled} ({scope})>"
