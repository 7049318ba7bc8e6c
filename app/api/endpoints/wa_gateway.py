"""
WA Gateway Endpoints

Proxy to the tenant's WhatsApp session in wa-gateway (connect, status,
QR) plus single sends and the shared message log.

status and qr are polled by the dashboard while pairing; the rate
limiter gives /wa-gateway/ a high ceiling and /connect a low one.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional

from app.database import get_db
from app.schemas.campaign import (
    GatewayResponse,
    WAMessageLogListResponse,
    WAMessageLogResponse,
    WASendRequest,
)
from app.api.deps import Principal, require_capability, require_features
from app.core.permissions import CAP_WA_SEND, CAP_WA_VIEW
from app.services.campaigns import WAMessageLogService
from app.services.wa_gateway import WAGatewayClient, get_wa_gateway
from app.utils.logging import get_logger

logger = get_logger(__name__)

FEATURE_WA_GATEWAY = "wa_gateway"

router = APIRouter(tags=["wa-gateway"])


def get_message_log_service() -> WAMessageLogService:
    return WAMessageLogService()


@router.post("/wa-gateway/connect", response_model=GatewayResponse)
async def connect(
    tenant_id: str = Depends(require_features(FEATURE_WA_GATEWAY)),
    principal: Principal = Depends(require_capability(CAP_WA_SEND)),
    gateway: WAGatewayClient = Depends(get_wa_gateway),
):
    """Start (or resume) the tenant's WhatsApp session."""
    logger.info(f"WA connect requested by {principal.user_id}", extra={"tenant_id": tenant_id})
    return GatewayResponse(data=gateway.connect(tenant_id))


@router.get("/wa-gateway/status", response_model=GatewayResponse)
async def gateway_status(
    tenant_id: str = Depends(require_features(FEATURE_WA_GATEWAY)),
    principal: Principal = Depends(require_capability(CAP_WA_VIEW)),
    gateway: WAGatewayClient = Depends(get_wa_gateway),
):
    return GatewayResponse(data=gateway.status(tenant_id))


@router.get("/wa-gateway/qr", response_model=GatewayResponse)
async def gateway_qr(
    tenant_id: str = Depends(require_features(FEATURE_WA_GATEWAY)),
    principal: Principal = Depends(require_capability(CAP_WA_VIEW)),
    gateway: WAGatewayClient = Depends(get_wa_gateway),
):
    return GatewayResponse(data=gateway.qr(tenant_id))


@router.post("/wa-gateway/send", response_model=WAMessageLogResponse)
async def send_message(
    body: WASendRequest,
    tenant_id: str = Depends(require_features(FEATURE_WA_GATEWAY)),
    principal: Principal = Depends(require_capability(CAP_WA_SEND)),
    db: Session = Depends(get_db),
    gateway: WAGatewayClient = Depends(get_wa_gateway),
    logs: WAMessageLogService = Depends(get_message_log_service),
):
    """
    Send one message now. The log row is written before the send, so a
    gateway failure (502) still leaves a `failed` entry behind.
    """
    return logs.send_single(db, gateway, tenant_id, body.to, body.text, client_id=body.client_id)


@router.get("/wa-logs", response_model=WAMessageLogListResponse)
async def list_message_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    source: Optional[str] = Query(None, pattern="^(single|campaign|system)$"),
    log_status: Optional[str] = Query(None, alias="status", pattern="^(queued|sent|failed)$"),
    tenant_id: str = Depends(require_features(FEATURE_WA_GATEWAY)),
    principal: Principal = Depends(require_capability(CAP_WA_VIEW)),
    db: Session = Depends(get_db),
    logs: WAMessageLogService = Depends(get_message_log_service),
):
    items, total = logs.list(db, tenant_id, source=source, status=log_status, page=page, page_size=page_size)
    return WAMessageLogListResponse(logs=items, total=total, page=page, page_size=page_size)
