"""
WhatsApp Campaign Models

A campaign owns its recipients (deleting a campaign cascades). Every
recipient moves from pending to sent/failed exactly once; the counters on
the campaign are settled by re-counting recipients when it goes terminal.

WAMessageLog is the shared send history for single, campaign and system
messages.
"""
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index, Integer
from sqlalchemy.orm import relationship
from app.core.clock import utcnow
from app.database import Base
import uuid


class CampaignStatus:
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    TERMINAL = (COMPLETED, FAILED, CANCELLED)


CAMPAIGN_TRANSITIONS = {
    CampaignStatus.QUEUED: {CampaignStatus.RUNNING, CampaignStatus.CANCELLED},
    CampaignStatus.RUNNING: {CampaignStatus.COMPLETED, CampaignStatus.FAILED, CampaignStatus.CANCELLED},
    # retry-failed re-opens a failed campaign
    CampaignStatus.FAILED: {CampaignStatus.RUNNING},
    CampaignStatus.COMPLETED: set(),
    CampaignStatus.CANCELLED: set(),
}


class RecipientStatus:
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class MessageSource:
    SINGLE = "single"
    CAMPAIGN = "campaign"
    SYSTEM = "system"


class MessageStatus:
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class WACampaign(Base):
    __tablename__ = "wa_campaigns"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    group_id = Column(
        String(36),
        ForeignKey("client_groups.id", ondelete="SET NULL"),
        nullable=True
    )

    status = Column(String(20), default=CampaignStatus.QUEUED, nullable=False, index=True)
    total = Column(Integer, default=0, nullable=False)
    sent = Column(Integer, default=0, nullable=False)
    failed = Column(Integer, default=0, nullable=False)

    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    recipients = relationship(
        "WARecipient",
        back_populates="campaign",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index('idx_wa_campaign_tenant_created', 'tenant_id', 'created_at'),
    )

    def __repr__(self):
        return f"<WACampaign {self.name} {self.status} {self.sent}+{self.failed}/{self.total}>"


class WARecipient(Base):
    __tablename__ = "wa_campaign_recipients"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    campaign_id = Column(
        String(36),
        ForeignKey("wa_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    client_id = Column(
        String(36),
        ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True
    )
    client_name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=False)

    status = Column(String(20), default=RecipientStatus.PENDING, nullable=False)
    error = Column(Text, nullable=True)
    message_id = Column(String(255), nullable=True)
    sent_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    campaign = relationship("WACampaign", back_populates="recipients")

    __table_args__ = (
        Index('idx_wa_recipient_campaign_status', 'campaign_id', 'status'),
    )

    def __repr__(self):
        return f"<WARecipient {self.phone} {self.status}>"


class WAMessageLog(Base):
    __tablename__ = "wa_message_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    source = Column(String(20), nullable=False)
    campaign_id = Column(
        String(36),
        ForeignKey("wa_campaigns.id", ondelete="SET NULL"),
        nullable=True
    )
    recipient_id = Column(String(36), nullable=True)
    client_id = Column(String(36), nullable=True)
    to_phone = Column(String(32), nullable=False)
    message_text = Column(Text, nullable=False)

    status = Column(String(20), default=MessageStatus.QUEUED, nullable=False)
    gateway_message_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_wa_log_tenant_created', 'tenant_id', 'created_at'),
        Index('idx_wa_log_tenant_status', 'tenant_id', 'status'),
    )

    def __repr__(self):
        return f"<WAMessageLog {self.source} {self.to_phone} {self.status}>"
