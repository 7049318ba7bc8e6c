"""
Celery tasks.

`wa_campaign.send` delivers one campaign recipient. The worker handles
gateway failures itself and returns normally; anything else (database
down, bug) raises and Celery retries with exponential backoff.
"""
import logging
from typing import Any, Dict, Optional

from app.services.campaigns import CampaignWorker, NOTIFICATION_QUEUE, SEND_TASK_NAME
from app.services.tenant_limiter import get_tenant_limiter
from app.services.wa_gateway import get_wa_gateway
from app.worker.celery_app import celery_app

logger = logging.getLogger(__name__)

_worker: Optional[CampaignWorker] = None


def get_campaign_worker() -> CampaignWorker:
    global _worker
    if _worker is None:
        _worker = CampaignWorker(gateway=get_wa_gateway(), limiter=get_tenant_limiter())
    return _worker


def set_campaign_worker(worker: Optional[CampaignWorker]) -> None:
    global _worker
    _worker = worker


@celery_app.task(
    name=SEND_TASK_NAME,
    bind=True,
    max_retries=3,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_jitter=True,
    time_limit=30,
)
def send_campaign_message(self, tenant_id: str, campaign_id: str, recipient_id: str,
                          phone: str = "", text: Optional[str] = None) -> None:
    logger.debug(
        f"wa_campaign.send recipient={recipient_id} attempt={self.request.retries + 1}",
        extra={"tenant_id": tenant_id},
    )
    get_campaign_worker().handle_send({
        "tenant_id": tenant_id,
        "campaign_id": campaign_id,
        "recipient_id": recipient_id,
        "phone": phone,
        "text": text,
    })


class CeleryTaskQueue:
    """TaskQueue backed by Celery; used by CampaignService in the API process."""

    def enqueue_send(self, payload: Dict[str, Any], countdown: float) -> None:
        send_campaign_message.apply_async(kwargs=payload, queue=NOTIFICATION_QUEUE, countdown=countdown)
