"""
WhatsApp Campaign Endpoints

Broadcast a message to every client in a group with a phone number.
Sends happen on the `notification` queue; the API only creates the
campaign and enqueues one job per recipient.

Gate (in this order): authenticated -> feature wa_gateway -> capability wa.view
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.campaign import (
    CampaignCreate,
    CampaignDetailResponse,
    CampaignListResponse,
    CampaignResponse,
    RetryFailedResponse,
)
from app.api.deps import Principal, require_capability, require_features
from app.core.permissions import CAP_WA_VIEW
from app.services.campaigns import CampaignService
from app.worker.tasks import CeleryTaskQueue
from app.utils.logging import get_logger

logger = get_logger(__name__)

FEATURE_WA_GATEWAY = "wa_gateway"

router = APIRouter(prefix="/wa-campaigns", tags=["wa-campaigns"])


def get_campaign_service() -> CampaignService:
    return CampaignService(CeleryTaskQueue())


@router.post("", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    body: CampaignCreate,
    tenant_id: str = Depends(require_features(FEATURE_WA_GATEWAY)),
    principal: Principal = Depends(require_capability(CAP_WA_VIEW)),
    db: Session = Depends(get_db),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    """
    Create the campaign and enqueue its recipients.

    Errors: 400 missing name/message/group or a group without phone
    numbers, 404 unknown group, 403 monthly WA quota exceeded.
    """
    campaign = campaigns.create_and_enqueue(
        db, tenant_id, body.name, body.message, body.group_id, created_by=principal.user_id
    )
    return campaign


@router.get("", response_model=CampaignListResponse)
async def list_campaigns(
    tenant_id: str = Depends(require_features(FEATURE_WA_GATEWAY)),
    principal: Principal = Depends(require_capability(CAP_WA_VIEW)),
    db: Session = Depends(get_db),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    """The 50 most recent campaigns."""
    return CampaignListResponse(campaigns=campaigns.list_campaigns(db, tenant_id))


@router.get("/{campaign_id}", response_model=CampaignDetailResponse)
async def get_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_features(FEATURE_WA_GATEWAY)),
    principal: Principal = Depends(require_capability(CAP_WA_VIEW)),
    db: Session = Depends(get_db),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    campaign, recipients = campaigns.get_detail(db, tenant_id, campaign_id)
    return CampaignDetailResponse(campaign=campaign, recipients=recipients)


@router.post("/{campaign_id}/retry-failed", response_model=RetryFailedResponse)
async def retry_failed(
    campaign_id: str,
    tenant_id: str = Depends(require_features(FEATURE_WA_GATEWAY)),
    principal: Principal = Depends(require_capability(CAP_WA_VIEW)),
    db: Session = Depends(get_db),
    campaigns: CampaignService = Depends(get_campaign_service),
):
    """Re-enqueue failed recipients. A campaign with none is returned unchanged."""
    retried = campaigns.retry_failed(db, tenant_id, campaign_id)
    campaign = campaigns.get_campaign(db, tenant_id, campaign_id)
    db.refresh(campaign)
    return RetryFailedResponse(retried=retried, campaign=campaign)
