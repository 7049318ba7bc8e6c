"""
Tenant Model

The tenant is the primary isolation boundary in our multi-tenant architecture.
Each tenant is one ISP with complete data isolation.

ARCHITECTURAL DECISION: Shared database, shared schema with a tenant_id
filter on every tenant-scoped table.
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Index, JSON
from sqlalchemy.orm import relationship
from app.core.clock import utcnow
from app.database import Base
import uuid


class TenantStatus:
    ACTIVE = "active"
    SUSPENDED = "suspended"
    PENDING = "pending"
    DELETED = "deleted"

    ALL = (ACTIVE, SUSPENDED, PENDING, DELETED)
    # Only these may serve traffic
    SERVING = (ACTIVE, PENDING)


class BillingStatus:
    ACTIVE = "active"
    OVERDUE = "overdue"
    SUSPENDED = "suspended"

    ALL = (ACTIVE, OVERDUE, SUSPENDED)


class Tenant(Base):
    __tablename__ = "tenants"

    # Using UUID for tenant IDs to avoid enumeration attacks
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    name = Column(String(255), nullable=False)
    # Used for subdomain and X-Tenant-Slug routing (e.g., acme.rrnet.id)
    slug = Column(String(100), unique=True, nullable=False, index=True)

    status = Column(String(20), default=TenantStatus.ACTIVE, nullable=False, index=True)
    billing_status = Column(String(20), default=BillingStatus.ACTIVE, nullable=False)

    plan_id = Column(
        String(36),
        ForeignKey("plans.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    trial_ends_at = Column(DateTime, nullable=True)

    # Free-form tenant settings (tax_percent, currency, ...)
    settings = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    # Soft delete
    deleted_at = Column(DateTime, nullable=True)

    # Relationships
    plan = relationship("Plan")
    users = relationship("User", back_populates="tenant", passive_deletes=True)
    addons = relationship("TenantAddon", back_populates="tenant", passive_deletes=True)

    __table_args__ = (
        Index('idx_tenant_status_deleted', 'status', 'deleted_at'),
    )

    def __repr__(self):
        return f"<Tenant {self.slug} ({self.status})>"

    @property
    def is_serving(self) -> bool:
        """Tenant may serve traffic."""
        return self.deleted_at is None and self.status in TenantStatus.SERVING

    @property
    def currency(self) -> str:
        return (self.settings or {}).get("currency", "IDR")

    @property
    def tax_percent(self) -> float:
        return float((self.settings or {}).get("tax_percent", 0) or 0)
