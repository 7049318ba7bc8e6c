"""
WhatsApp Schemas

Campaigns, single sends, the message log and the gateway proxy.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime


class CampaignCreate(BaseModel):
    # Emptiness is checked after trimming by the service so the error names the field
    name: str = Field("", max_length=255)
    message: str = ""
    group_id: str = ""


class CampaignResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    message: str
    group_id: Optional[str]
    status: str
    total: int
    sent: int
    failed: int
    created_by: Optional[str]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class CampaignListResponse(BaseModel):
    campaigns: List[CampaignResponse]


class RecipientResponse(BaseModel):
    id: str
    client_id: Optional[str]
    client_name: Optional[str]
    phone: str
    status: str
    error: Optional[str]
    message_id: Optional[str]
    sent_at: Optional[datetime]

    class Config:
        from_attributes = True


class CampaignDetailResponse(BaseModel):
    campaign: CampaignResponse
    recipients: List[RecipientResponse]


class RetryFailedResponse(BaseModel):
    retried: int
    campaign: CampaignResponse


class WASendRequest(BaseModel):
    to: str = Field(..., min_length=1, max_length=32)
    text: str = Field(..., min_length=1)
    client_id: Optional[str] = None


class WAMessageLogResponse(BaseModel):
    id: str
    source: str
    campaign_id: Optional[str]
    recipient_id: Optional[str]
    client_id: Optional[str]
    to_phone: str
    message_text: str
    status: str
    gateway_message_id: Optional[str]
    error: Optional[str]
    created_at: datetime
    sent_at: Optional[datetime]

    class Config:
        from_attributes = True


class WAMessageLogListResponse(BaseModel):
    logs: List[WAMessageLogResponse]
    total: int
    page: int
    page_size: int


class GatewayResponse(BaseModel):
    """Pass-through body from wa-gateway (status, qr, connect)."""
    data: Dict[str, Any]
