"""
User Model

Users belong to a tenant and carry a role for RBAC.

IMPORTANT: tenant_id is the critical field for data isolation.
Every query MUST filter by tenant_id to prevent cross-tenant data leaks.
tenant_id is NULL only for platform super admins.
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Index, Enum as SQLEnum
from sqlalchemy.orm import relationship
from app.core.clock import utcnow
from app.database import Base
import uuid
import enum


class UserRole(str, enum.Enum):
    """
    Roles known to the RBAC table in app.core.permissions.

    SUPER_ADMIN is the only role allowed without a tenant.
    """
    SUPER_ADMIN = "super_admin"
    OWNER = "owner"
    ADMIN = "admin"
    FINANCE = "finance"
    HR = "hr"
    TECHNICIAN = "technician"
    COLLECTOR = "collector"
    CLIENT = "client"


class UserStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"

    ALL = (ACTIVE, INACTIVE, SUSPENDED)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # CRITICAL: Tenant foreign key for data isolation
    # ON DELETE CASCADE ensures orphaned users are cleaned up
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    email = Column(String(255), nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)

    role = Column(
        SQLEnum(UserRole, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        default=UserRole.CLIENT,
        nullable=False,
        index=True
    )

    status = Column(String(20), default=UserStatus.ACTIVE, nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_login_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    tenant = relationship("Tenant", back_populates="users")

    __table_args__ = (
        # CRITICAL: email is unique per tenant, not globally
        Index('idx_user_tenant_email', 'tenant_id', 'email', unique=True),
        Index('idx_user_tenant_status', 'tenant_id', 'status'),
        Index('idx_user_tenant_role', 'tenant_id', 'role'),
    )

    def __repr__(self):
        return f"<User {self.email} (tenant={self.tenant_id})>"

    @property
    def role_code(self) -> str:
        return self.role.value if isinstance(self.role, UserRole) else str(self.role)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE and self.deleted_at is None

    @property
    def is_super_admin(self) -> bool:
        return self.tenant_id is None and self.role_code == UserRole.SUPER_ADMIN.value
