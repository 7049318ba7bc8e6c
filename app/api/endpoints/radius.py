"""
RADIUS REST Endpoints

Called by the RADIUS daemon (FreeRADIUS rlm_rest), not by users:

- POST /radius/auth  Access-Request  -> 200 reply attributes / 401 reject
- POST /radius/acct  Accounting      -> 204

SECURITY: these routes carry no bearer token and no tenant header. The
daemon proves itself with the shared secret in X-RRNET-RADIUS-SECRET and
the tenant comes from the NAS that sent the request.

The session and auth-attempt listings are ordinary tenant routes
(capability network.view).
"""
from fastapi import APIRouter, Depends, Header, Query, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List, Optional

from app.config import get_settings
from app.database import get_db
from app.schemas.radius import (
    RadiusAcctRequest,
    RadiusAuthAttemptResponse,
    RadiusAuthRequest,
    RadiusSessionResponse,
)
from app.api.deps import Principal, get_tenant_id, require_capability
from app.core.exceptions import AuthenticationError
from app.core.permissions import CAP_NETWORK_VIEW
from app.services.radius import RadiusService, secret_matches
from app.utils.logging import get_logger, log_security_event

logger = get_logger(__name__)

RADIUS_SECRET_HEADER = "X-RRNET-RADIUS-SECRET"

router = APIRouter(prefix="/radius", tags=["radius"])


def get_radius_service() -> RadiusService:
    return RadiusService()


async def verify_radius_secret(
    secret: Optional[str] = Header(None, alias=RADIUS_SECRET_HEADER),
) -> None:
    if not secret_matches(get_settings().RRNET_RADIUS_REST_SECRET, secret):
        log_security_event("radius_secret_mismatch", {"header_present": secret is not None}, logger)
        raise AuthenticationError("Invalid RADIUS secret")


@router.post("/auth", dependencies=[Depends(verify_radius_secret)])
async def radius_auth(
    body: RadiusAuthRequest,
    db: Session = Depends(get_db),
    radius: RadiusService = Depends(get_radius_service),
):
    """
    Voucher login. Accept returns the reply attributes for the NAS
    (Mikrotik-Rate-Limit, or Class for auth-only packages).
    """
    decision = radius.authenticate(db, body)
    if not decision.accepted:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"Reply-Message": decision.message},
        )
    return decision.reply


@router.post("/acct", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(verify_radius_secret)])
async def radius_acct(
    body: RadiusAcctRequest,
    db: Session = Depends(get_db),
    radius: RadiusService = Depends(get_radius_service),
):
    radius.account(db, body)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/sessions", response_model=List[RadiusSessionResponse])
async def list_sessions(
    active: bool = Query(False, description="Only sessions without a Stop"),
    username: Optional[str] = Query(None, max_length=100),
    limit: int = Query(100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_NETWORK_VIEW)),
    db: Session = Depends(get_db),
    radius: RadiusService = Depends(get_radius_service),
):
    return radius.list_sessions(db, tenant_id, active_only=active, username=username, limit=limit)


@router.get("/auth-attempts", response_model=List[RadiusAuthAttemptResponse])
async def list_auth_attempts(
    accepted: Optional[bool] = None,
    username: Optional[str] = Query(None, max_length=100),
    limit: int = Query(100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_NETWORK_VIEW)),
    db: Session = Depends(get_db),
    radius: RadiusService = Depends(get_radius_service),
):
    return radius.list_auth_attempts(db, tenant_id, accepted=accepted, username=username, limit=limit)
