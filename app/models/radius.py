"""
RADIUS Models

Routers (NAS devices) resolve the owning tenant for inbound RADIUS REST
calls. Vouchers are single-use hotspot credentials activated by the first
accounting Start.
"""
from sqlalchemy import (
    Column, String, Boolean, DateTime, ForeignKey, Index, Integer, BigInteger, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from app.core.clock import utcnow
from app.database import Base
import uuid


class Router(Base):
    __tablename__ = "routers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name = Column(String(255), nullable=False)
    # RADIUS NAS-Identifier
    nas_identifier = Column(String(100), nullable=True, index=True)
    nas_ip = Column(String(45), nullable=True, index=True)
    is_revoked = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Router {self.name} nas={self.nas_identifier or self.nas_ip}>"

    @property
    def is_usable(self) -> bool:
        return not self.is_revoked and self.deleted_at is None


class VoucherPackage(Base):
    __tablename__ = "voucher_packages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name = Column(String(255), nullable=False)
    download_kbps = Column(Integer, default=0, nullable=False)
    upload_kbps = Column(Integer, default=0, nullable=False)
    # Validity after first login
    duration_hours = Column(Integer, default=24, nullable=False)
    price = Column(BigInteger, default=0, nullable=False)
    # "radius" -> rate limit sent in the Access-Accept reply
    rate_limit_mode = Column(String(20), default="radius", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<VoucherPackage {self.name} {self.download_kbps}k/{self.upload_kbps}k>"

    @property
    def rate_limit(self) -> str:
        return f"{self.download_kbps}k/{self.upload_kbps}k"


class VoucherStatus:
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    DISABLED = "disabled"

    # States that may still authenticate
    USABLE = (ACTIVE, USED)


class Voucher(Base):
    __tablename__ = "vouchers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    package_id = Column(
        String(36),
        ForeignKey("voucher_packages.id", ondelete="CASCADE"),
        nullable=False
    )
    router_id = Column(
        String(36),
        ForeignKey("routers.id", ondelete="SET NULL"),
        nullable=True
    )
    code = Column(String(64), nullable=False)
    password = Column(String(64), nullable=False)
    status = Column(String(20), default=VoucherStatus.ACTIVE, nullable=False)

    used_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    package = relationship("VoucherPackage")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'code', name='uq_voucher_tenant_code'),
    )

    def __repr__(self):
        return f"<Voucher {self.code} {self.status}>"


class RadiusSession(Base):
    __tablename__ = "radius_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    router_id = Column(
        String(36),
        ForeignKey("routers.id", ondelete="SET NULL"),
        nullable=True
    )
    voucher_id = Column(
        String(36),
        ForeignKey("vouchers.id", ondelete="SET NULL"),
        nullable=True
    )

    acct_session_id = Column(String(128), nullable=False)
    username = Column(String(128), nullable=False)
    nas_ip = Column(String(45), nullable=True)
    nas_port_id = Column(String(64), nullable=True)
    framed_ip = Column(String(45), nullable=True)
    calling_station_id = Column(String(64), nullable=True)
    called_station_id = Column(String(64), nullable=True)

    session_time = Column(BigInteger, nullable=True)
    input_octets = Column(BigInteger, nullable=True)
    output_octets = Column(BigInteger, nullable=True)
    terminate_cause = Column(String(64), nullable=True)

    started_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    stopped_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'acct_session_id', name='uq_radius_session_acct_id'),
        Index('idx_radius_session_tenant_started', 'tenant_id', 'started_at'),
    )

    def __repr__(self):
        return f"<RadiusSession {self.acct_session_id} {self.username}>"

    @property
    def is_open(self) -> bool:
        return self.stopped_at is None


class RadiusAuthAttempt(Base):
    __tablename__ = "radius_auth_attempts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    router_id = Column(String(36), nullable=True)
    voucher_id = Column(String(36), nullable=True)
    username = Column(String(128), nullable=False)
    nas_ip = Column(String(45), nullable=True)
    nas_port_id = Column(String(64), nullable=True)
    calling_station_id = Column(String(64), nullable=True)
    called_station_id = Column(String(64), nullable=True)

    accepted = Column(Boolean, nullable=False)
    reason = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_radius_attempt_tenant_created', 'tenant_id', 'created_at'),
    )

    def __repr__(self):
        return f"<RadiusAuthAttempt {self.username} accepted={self.accepted}>"
