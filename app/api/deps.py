"""
API Dependencies

Reusable FastAPI dependencies for authentication and authorization.
Every protected route composes them in the same order:

    authenticate (get_principal) -> feature gate -> capability gate -> handler

so a missing token is always 401 before a missing feature (403) and a
missing feature is reported before a missing capability.

CRITICAL: get_principal() is where token tenant and request tenant are
compared. A token minted for tenant A never works against tenant B.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.exceptions import (
    AuthenticationError,
    ForbiddenError,
    TenantInactiveError,
    TenantIsolationError,
    ValidationError,
)
from app.core.permissions import check_any_capability, check_capability
from app.core.security import TokenClaims, get_jwt_manager
from app.database import get_db
from app.models.tenant import Tenant
from app.models.user import User
from app.services.entitlements import get_entitlement_resolver
from app.utils.logging import log_security_event
import logging

logger = logging.getLogger(__name__)

# auto_error=False: a missing header must be our 401 JSON, not FastAPI's 403
bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller for this request."""
    user_id: str
    tenant_id: Optional[str]
    role: str
    email: str

    @property
    def is_super_admin(self) -> bool:
        return self.tenant_id is None and self.role == "super_admin"


def get_request_tenant(request: Request) -> Optional[Tenant]:
    """Tenant resolved by TenantMiddleware, or None."""
    return getattr(request.state, "tenant", None)


async def get_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> Principal:
    """
    Validate the bearer token and bind the principal to request.state.

    The effective tenant is the one resolved from the request; a request
    without tenant headers falls back to the token's tenant, which must
    still be serving. The user behind the token must still be active:
    disabling a user or suspending a tenant takes effect on the next
    request, not when the access token expires.
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Missing bearer token")

    claims: TokenClaims = get_jwt_manager().validate_access(credentials.credentials)

    request_tenant_id = getattr(request.state, "tenant_id", None)
    if request_tenant_id and claims.tenant_id != request_tenant_id:
        log_security_event(
            "tenant_isolation_violation",
            {
                "user_id": claims.user_id,
                "token_tenant": claims.tenant_id,
                "request_tenant": request_tenant_id,
                "path": request.url.path,
            },
            logger,
        )
        raise TenantIsolationError("Token tenant mismatch")

    tenant_id = request_tenant_id or claims.tenant_id
    if tenant_id and not request_tenant_id:
        # No tenant header: TenantMiddleware did not vet the token's tenant
        tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
        if tenant is None or not tenant.is_serving:
            logger.warning(f"Token for inactive tenant {tenant_id} rejected on {request.url.path}")
            raise TenantInactiveError()
        request.state.tenant = tenant
        request.state.tenant_id = tenant.id

    user = _load_user(db, claims.user_id, tenant_id)
    if not user.is_active:
        logger.warning(f"Token of inactive user {user.id} rejected ({user.status})")
        raise AuthenticationError("User account is inactive")
    request.state.user = user

    principal = Principal(
        user_id=claims.user_id,
        tenant_id=tenant_id,
        role=claims.role,
        email=claims.email,
    )
    request.state.principal = principal
    return principal


def _load_user(db: Session, user_id: str, tenant_id: Optional[str]) -> User:
    query = db.query(User).filter(User.id == user_id)
    if tenant_id:
        query = query.filter(User.tenant_id == tenant_id)  # Double-check tenant isolation
    else:
        query = query.filter(User.tenant_id.is_(None))
    user = query.first()

    if not user or user.deleted_at is not None:
        logger.warning(f"User not found: {user_id} in tenant {tenant_id}")
        raise AuthenticationError("User not found")
    return user


async def get_current_user(
    request: Request,
    principal: Principal = Depends(get_principal),
) -> User:
    """The user get_principal already loaded and checked for this request."""
    return request.state.user


async def get_tenant_id(principal: Principal = Depends(get_principal)) -> str:
    """Tenant id of the caller. Tenant-scoped routes fail without one."""
    if not principal.tenant_id:
        raise ValidationError("No tenant context")
    return principal.tenant_id


async def get_current_tenant(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> Tenant:
    """Session-bound Tenant row (relationships loadable)."""
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if tenant is None or not tenant.is_serving:
        raise TenantInactiveError()
    return tenant


def require_features(*codes: str):
    """All listed features must be granted to the caller's tenant."""

    async def dependency(
        tenant_id: str = Depends(get_tenant_id),
        db: Session = Depends(get_db),
    ) -> str:
        get_entitlement_resolver().require_features(db, tenant_id, codes)
        return tenant_id

    return dependency


def require_capability(capability: str):
    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        check_capability(principal.role, capability)
        return principal

    return dependency


def require_any_capability(*capabilities: str):
    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        check_any_capability(principal.role, capabilities)
        return principal

    return dependency


async def require_super_admin(principal: Principal = Depends(get_principal)) -> Principal:
    """Platform endpoints: super admin role AND no tenant on the principal."""
    if not principal.is_super_admin:
        log_security_event(
            "privilege_escalation",
            {"user_id": principal.user_id, "tenant_id": principal.tenant_id, "role": principal.role},
            logger,
        )
        raise ForbiddenError("Super admin privileges required")
    return principal
