"""
WhatsApp Campaign Service and Worker

CampaignService (API side):
    create_and_enqueue -> campaign `queued` + recipients `pending` in one
    transaction, one `wa_campaign.send` job per recipient on the
    notification queue, then campaign `running`.

CampaignWorker (queue side), one job per recipient:
    1. take the tenant's send slot
    2. sleep 300-700 ms jitter
    3. WAMessageLog{source=campaign, status=queued}
    4. gateway send; recipient -> sent/failed, log -> sent/failed,
       campaign counter += 1
    5. no pending recipients left -> re-count and settle the campaign:
       `completed` if nothing failed, else `failed`

CRITICAL: a recipient leaves `pending` exactly once. Every recipient write
is `UPDATE ... WHERE status = 'pending'`; zero rows affected means another
delivery of the same job got there first and this one does nothing.

Handled failures (gateway down, ok=false) return None so the queue does
not retry them; only unexpected errors propagate to the queue's retry.
"""
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.exceptions import (
    CampaignNotFoundError,
    NoRecipientsError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from app.core.features import LIMIT_WA_QUOTA_MONTHLY
from app.database import SessionLocal
from app.models.campaign import (
    CampaignStatus,
    MessageSource,
    MessageStatus,
    RecipientStatus,
    WACampaign,
    WAMessageLog,
    WARecipient,
)
from app.models.client import Client, ClientGroup
from app.services.entitlements import EntitlementResolver, get_entitlement_resolver
from app.services.tenant_limiter import TenantLimiter
from app.services.wa_gateway import WAGatewayClient
import logging

logger = logging.getLogger(__name__)

NOTIFICATION_QUEUE = "notification"
SEND_TASK_NAME = "wa_campaign.send"

# Countdown before a job becomes visible / jitter before each send (ms)
JITTER_MIN_MS = 300
JITTER_SPAN_MS = 400

LIST_LIMIT = 50
DETAIL_RECIPIENT_LIMIT = 500


class TaskQueue(Protocol):
    def enqueue_send(self, payload: Dict[str, Any], countdown: float) -> None:
        ...


def jitter_seconds(rng: random.Random) -> float:
    return (JITTER_MIN_MS + rng.randrange(JITTER_SPAN_MS)) / 1000.0


def month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1)


class WAMessageLogService:
    """Send history shared by single sends, campaigns and system messages."""

    def __init__(self, clock: Clock = system_clock):
        self.clock = clock

    def create_queued(self, db: Session, tenant_id: str, source: str, to_phone: str, text: str,
                      campaign_id: Optional[str] = None, recipient_id: Optional[str] = None,
                      client_id: Optional[str] = None) -> WAMessageLog:
        log = WAMessageLog(
            tenant_id=tenant_id,
            source=source,
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            client_id=client_id,
            to_phone=to_phone,
            message_text=text,
            status=MessageStatus.QUEUED,
            created_at=self.clock.now(),
        )
        db.add(log)
        db.commit()
        return log

    def mark_sent(self, db: Session, log: WAMessageLog, message_id: Optional[str]) -> None:
        log.status = MessageStatus.SENT
        log.gateway_message_id = message_id
        log.sent_at = self.clock.now()
        db.commit()

    def mark_failed(self, db: Session, log: WAMessageLog, error: str) -> None:
        log.status = MessageStatus.FAILED
        log.error = error
        db.commit()

    def count_since(self, db: Session, tenant_id: str, since: datetime) -> int:
        return db.query(func.count(WAMessageLog.id)).filter(
            WAMessageLog.tenant_id == tenant_id,
            WAMessageLog.created_at >= since,
        ).scalar() or 0

    def list(self, db: Session, tenant_id: str, source: Optional[str] = None,
             status: Optional[str] = None, page: int = 1, page_size: int = 50) -> Tuple[List[WAMessageLog], int]:
        query = db.query(WAMessageLog).filter(WAMessageLog.tenant_id == tenant_id)
        if source:
            query = query.filter(WAMessageLog.source == source)
        if status:
            query = query.filter(WAMessageLog.status == status)
        total = query.count()
        items = query.order_by(WAMessageLog.created_at.desc()).offset((page - 1) * page_size).limit(page_size).all()
        return items, total

    def send_single(self, db: Session, gateway: WAGatewayClient, tenant_id: str, to_phone: str,
                    text: str, client_id: Optional[str] = None) -> WAMessageLog:
        """Direct send from the gateway screen. Gateway errors are logged, then re-raised."""
        to_phone = (to_phone or "").strip()
        text = (text or "").strip()
        if not to_phone:
            raise ValidationError("Recipient phone is required")
        if not text:
            raise ValidationError("Message is required")

        log = self.create_queued(db, tenant_id, MessageSource.SINGLE, to_phone, text, client_id=client_id)
        try:
            result = gateway.send(tenant_id, to_phone, text)
        except UpstreamError as e:
            self.mark_failed(db, log, e.detail)
            raise
        if not result.ok:
            self.mark_failed(db, log, result.error or "wa-gateway reported ok=false")
        else:
            self.mark_sent(db, log, result.message_id)
        return log


class CampaignService:
    def __init__(
        self,
        queue: TaskQueue,
        clock: Clock = system_clock,
        resolver: Optional[EntitlementResolver] = None,
        rng: Optional[random.Random] = None,
    ):
        self.queue = queue
        self.clock = clock
        self.resolver = resolver
        self.rng = rng or random.Random()
        self.logs = WAMessageLogService(clock)

    def _resolver(self) -> EntitlementResolver:
        return self.resolver or get_entitlement_resolver()

    def _enqueue(self, tenant_id: str, campaign: WACampaign, recipient: WARecipient) -> None:
        payload = {
            "tenant_id": tenant_id,
            "campaign_id": campaign.id,
            "recipient_id": recipient.id,
            "phone": recipient.phone,
            "text": campaign.message,
        }
        self.queue.enqueue_send(payload, countdown=jitter_seconds(self.rng))

    def _mark_running(self, db: Session, campaign_id: str, from_status: str) -> None:
        # Conditional: an inline worker may already have settled the campaign
        db.execute(
            update(WACampaign)
            .where(WACampaign.id == campaign_id, WACampaign.status == from_status)
            .values(status=CampaignStatus.RUNNING, updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def recipients_for_group(self, db: Session, tenant_id: str, group_id: str) -> List[Client]:
        clients = db.query(Client).filter(
            Client.tenant_id == tenant_id,
            Client.group_id == group_id,
            Client.deleted_at.is_(None),
        ).order_by(Client.name.asc()).all()
        return [c for c in clients if (c.phone or "").strip()]

    def create_and_enqueue(self, db: Session, tenant_id: str, name: str, message: str,
                           group_id: str, created_by: Optional[str] = None) -> WACampaign:
        name = (name or "").strip()
        message = (message or "").strip()
        group_id = (group_id or "").strip()
        if not name:
            raise ValidationError("Name is required")
        if not message:
            raise ValidationError("Message is required")
        if not group_id:
            raise ValidationError("Client group is required")

        group = db.query(ClientGroup).filter(
            ClientGroup.id == group_id,
            ClientGroup.tenant_id == tenant_id,
        ).first()
        if not group:
            raise NotFoundError("Client group not found")

        clients = self.recipients_for_group(db, tenant_id, group_id)
        if not clients:
            raise NoRecipientsError()

        now = self.clock.now()
        used = self.logs.count_since(db, tenant_id, month_start(now))
        self._resolver().check_limit(db, tenant_id, LIMIT_WA_QUOTA_MONTHLY, used, adding=len(clients))

        campaign = WACampaign(
            tenant_id=tenant_id,
            name=name,
            message=message,
            group_id=group_id,
            status=CampaignStatus.QUEUED,
            total=len(clients),
            sent=0,
            failed=0,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        db.add(campaign)
        db.flush()
        recipients = [
            WARecipient(
                campaign_id=campaign.id,
                tenant_id=tenant_id,
                client_id=c.id,
                client_name=c.name,
                phone=c.phone.strip(),
                status=RecipientStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            for c in clients
        ]
        db.add_all(recipients)
        db.commit()

        logger.info(
            f"Campaign {campaign.id} created with {len(recipients)} recipients",
            extra={"tenant_id": tenant_id},
        )

        for recipient in recipients:
            self._enqueue(tenant_id, campaign, recipient)

        self._mark_running(db, campaign.id, CampaignStatus.QUEUED)
        db.refresh(campaign)
        return campaign

    def get_campaign(self, db: Session, tenant_id: str, campaign_id: str) -> WACampaign:
        campaign = db.query(WACampaign).filter(
            WACampaign.id == campaign_id,
            WACampaign.tenant_id == tenant_id,
        ).first()
        if not campaign:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    def list_campaigns(self, db: Session, tenant_id: str, limit: int = LIST_LIMIT) -> List[WACampaign]:
        return db.query(WACampaign).filter(
            WACampaign.tenant_id == tenant_id,
        ).order_by(WACampaign.created_at.desc()).limit(limit).all()

    def get_detail(self, db: Session, tenant_id: str, campaign_id: str) -> Tuple[WACampaign, List[WARecipient]]:
        campaign = self.get_campaign(db, tenant_id, campaign_id)
        recipients = db.query(WARecipient).filter(
            WARecipient.tenant_id == tenant_id,
            WARecipient.campaign_id == campaign.id,
        ).order_by(WARecipient.created_at.asc(), WARecipient.phone.asc()).limit(DETAIL_RECIPIENT_LIMIT).all()
        return campaign, recipients

    def retry_failed(self, db: Session, tenant_id: str, campaign_id: str) -> int:
        """Reset `failed` recipients to `pending` and enqueue them again. Returns how many."""
        campaign = self.get_campaign(db, tenant_id, campaign_id)
        failed = db.query(WARecipient).filter(
            WARecipient.tenant_id == tenant_id,
            WARecipient.campaign_id == campaign.id,
            WARecipient.status == RecipientStatus.FAILED,
        ).all()
        if not failed:
            return 0

        now = self.clock.now()
        ids = [r.id for r in failed]
        db.execute(
            update(WARecipient)
            .where(WARecipient.id.in_(ids), WARecipient.status == RecipientStatus.FAILED)
            .values(status=RecipientStatus.PENDING, error=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        sent, failed_count = _count_terminal(db, campaign.id)
        db.execute(
            update(WACampaign)
            .where(WACampaign.id == campaign.id)
            .values(
                sent=sent,
                failed=failed_count,
                status=CampaignStatus.RUNNING,
                completed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()

        for recipient in failed:
            self._enqueue(tenant_id, campaign, recipient)

        logger.info(f"Campaign {campaign.id}: {len(failed)} failed recipients re-enqueued", extra={"tenant_id": tenant_id})
        return len(failed)


def _count_terminal(db: Session, campaign_id: str) -> Tuple[int, int]:
    rows = dict(
        db.query(WARecipient.status, func.count(WARecipient.id)).filter(
            WARecipient.campaign_id == campaign_id,
        ).group_by(WARecipient.status).all()
    )
    return rows.get(RecipientStatus.SENT, 0), rows.get(RecipientStatus.FAILED, 0)


class CampaignWorker:
    def __init__(
        self,
        gateway: WAGatewayClient,
        limiter: TenantLimiter,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = system_clock,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.gateway = gateway
        self.limiter = limiter
        self.session_factory = session_factory
        self.clock = clock
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.logs = WAMessageLogService(clock)

    def handle_send(self, payload: Dict[str, Any]) -> None:
        tenant_id = payload["tenant_id"]
        recipient_id = payload["recipient_id"]

        db = self.session_factory()
        try:
            recipient = db.query(WARecipient).filter(
                WARecipient.id == recipient_id,
                WARecipient.tenant_id == tenant_id,
            ).first()
            if recipient is None or recipient.status != RecipientStatus.PENDING:
                logger.info(f"Recipient {recipient_id} already processed, skipping", extra={"tenant_id": tenant_id})
                return None

            campaign_id = recipient.campaign_id
            phone = payload.get("phone") or recipient.phone
            text = payload.get("text")
            if text is None:
                text = db.query(WACampaign.message).filter(WACampaign.id == campaign_id).scalar()

            with self.limiter.slot(tenant_id):
                self.sleep(jitter_seconds(self.rng))
                log = self.logs.create_queued(
                    db, tenant_id, MessageSource.CAMPAIGN, phone, text,
                    campaign_id=campaign_id, recipient_id=recipient_id, client_id=recipient.client_id,
                )
                try:
                    result = self.gateway.send(tenant_id, phone, text)
                    error = None if result.ok else (result.error or "wa-gateway reported ok=false")
                except UpstreamError as e:
                    result = None
                    error = e.detail

            if error is not None:
                self.logs.mark_failed(db, log, error)
                applied = self._mark_recipient(db, recipient_id, campaign_id, RecipientStatus.FAILED, error=error)
                logger.warning(
                    f"Campaign send failed for recipient {recipient_id}: {error}",
                    extra={"tenant_id": tenant_id},
                )
            else:
                self.logs.mark_sent(db, log, result.message_id)
                applied = self._mark_recipient(db, recipient_id, campaign_id, RecipientStatus.SENT,
                                               message_id=result.message_id)

            if applied:
                self._settle(db, campaign_id)
            return None
        finally:
            db.close()

    def _mark_recipient(self, db: Session, recipient_id: str, campaign_id: str, status: str,
                        error: Optional[str] = None, message_id: Optional[str] = None) -> bool:
        now = self.clock.now()
        values = {"status": status, "error": error, "updated_at": now}
        if status == RecipientStatus.SENT:
            values.update(message_id=message_id, sent_at=now)

        result = db.execute(
            update(WARecipient)
            .where(WARecipient.id == recipient_id, WARecipient.status == RecipientStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            return False

        counter = WACampaign.sent if status == RecipientStatus.SENT else WACampaign.failed
        db.execute(
            update(WACampaign)
            .where(WACampaign.id == campaign_id)
            .values({counter.key: counter + 1, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return True

    def _settle(self, db: Session, campaign_id: str) -> None:
        pending = db.query(func.count(WARecipient.id)).filter(
            WARecipient.campaign_id == campaign_id,
            WARecipient.status == RecipientStatus.PENDING,
        ).scalar()
        if pending:
            return

        sent, failed = _count_terminal(db, campaign_id)
        terminal = CampaignStatus.COMPLETED if failed == 0 else CampaignStatus.FAILED
        now = self.clock.now()
        db.execute(
            update(WACampaign)
            .where(
                WACampaign.id == campaign_id,
                WACampaign.status.in_((CampaignStatus.QUEUED, CampaignStatus.RUNNING)),
            )
            .values(sent=sent, failed=failed, status=terminal, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.info(f"Campaign {campaign_id} {terminal}: {sent} sent, {failed} failed")
