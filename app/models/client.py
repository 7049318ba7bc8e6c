"""
Client Models

Clients are the ISP's subscribers. They are tenant-scoped, soft-deleted,
and move through the status machine in CLIENT_TRANSITIONS. Tombstoned
clients are hard-deleted by the cleanup scheduler after retention.

Service packages and discounts are read by billing to work out the
effective monthly fee.
"""
from sqlalchemy import (
    Column, String, Text, Boolean, DateTime, Date, ForeignKey, Index, Integer, BigInteger,
    Numeric, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from app.core.clock import utcnow
from app.database import Base
import uuid


class ClientStatus:
    ACTIVE = "active"
    ISOLIR = "isolir"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"

    ALL = (ACTIVE, ISOLIR, SUSPENDED, TERMINATED)
    # Clients that are billed each month
    BILLABLE = (ACTIVE, ISOLIR)


# source -> allowed targets. terminated is absorbing.
CLIENT_TRANSITIONS = {
    ClientStatus.ACTIVE: {ClientStatus.ISOLIR, ClientStatus.SUSPENDED, ClientStatus.TERMINATED},
    ClientStatus.ISOLIR: {ClientStatus.ACTIVE, ClientStatus.TERMINATED},
    ClientStatus.SUSPENDED: {ClientStatus.ACTIVE, ClientStatus.TERMINATED},
    ClientStatus.TERMINATED: set(),
}


def can_transition_client(current: str, target: str) -> bool:
    return target in CLIENT_TRANSITIONS.get(current, set())


class ClientGroup(Base):
    __tablename__ = "client_groups"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'name', name='uq_client_group_tenant_name'),
    )

    def __repr__(self):
        return f"<ClientGroup {self.name} (tenant={self.tenant_id})>"


class PricingModel:
    MONTHLY = "monthly"
    PER_DEVICE = "per_device"


class ServicePackage(Base):
    """Internet package (PPPoE or Lite) a client subscribes to."""
    __tablename__ = "service_packages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name = Column(String(255), nullable=False)
    category = Column(String(20), default="regular", nullable=False)  # regular, business, lite
    pricing_model = Column(String(20), default=PricingModel.MONTHLY, nullable=False)
    price_monthly = Column(BigInteger, default=0, nullable=False)
    price_per_device = Column(BigInteger, default=0, nullable=False)
    speed_profile = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<ServicePackage {self.name}>"

    def fee_for(self, device_count: int) -> int:
        if self.pricing_model == PricingModel.PER_DEVICE:
            return int(self.price_per_device) * max(int(device_count or 1), 1)
        return int(self.price_monthly)


class DiscountType:
    PERCENT = "percent"
    FIXED = "fixed"


class Discount(Base):
    """Tenant discount. A global active discount applies to every generated invoice."""
    __tablename__ = "discounts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name = Column(String(255), nullable=False)
    discount_type = Column(String(20), default=DiscountType.PERCENT, nullable=False)
    # percent: 0-100; fixed: minor units
    value = Column(Numeric(12, 2), default=0, nullable=False)
    is_global = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    starts_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_discount_tenant_global', 'tenant_id', 'is_global', 'is_active'),
    )

    def __repr__(self):
        return f"<Discount {self.name} {self.discount_type}={self.value}>"

    def applies_at(self, now) -> bool:
        if not self.is_active:
            return False
        if self.starts_at and self.starts_at > now:
            return False
        return self.ends_at is None or self.ends_at > now


class Client(Base):
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # CRITICAL: Tenant foreign key for isolation
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    client_code = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=True)
    email = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)

    status = Column(String(20), default=ClientStatus.ACTIVE, nullable=False, index=True)
    category = Column(String(20), default="regular", nullable=False)

    group_id = Column(
        String(36),
        ForeignKey("client_groups.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    service_package_id = Column(
        String(36),
        ForeignKey("service_packages.id", ondelete="SET NULL"),
        nullable=True
    )
    device_count = Column(Integer, default=1, nullable=False)

    # Billing
    payment_due_day = Column(Integer, default=1, nullable=False)  # 1..31
    monthly_fee = Column(BigInteger, default=0, nullable=False)
    billing_date = Column(Date, nullable=True)

    # Isolation
    isolir_reason = Column(String(255), nullable=True)
    isolir_at = Column(DateTime, nullable=True)

    pppoe_username = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    # Soft delete; hard-deleted by the cleanup scheduler after retention
    deleted_at = Column(DateTime, nullable=True, index=True)

    group = relationship("ClientGroup")
    service_package = relationship("ServicePackage")

    __table_args__ = (
        Index('idx_client_tenant_code', 'tenant_id', 'client_code', unique=True),
        Index('idx_client_tenant_status', 'tenant_id', 'status', 'deleted_at'),
        Index('idx_client_tenant_group', 'tenant_id', 'group_id'),
    )

    def __repr__(self):
        return f"<Client {self.client_code} {self.status} (tenant={self.tenant_id})>"

    def soft_delete(self, now):
        self.deleted_at = now
