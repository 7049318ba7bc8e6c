"""
Tenant Middleware

Extracts tenant context from requests and makes it available throughout
the request lifecycle. This is CRITICAL for multi-tenant isolation.

Tenant identifier, in priority order:
1. X-Tenant-Slug header (API clients, the dashboard)
2. Subdomain of the Host header: acme.rrnet.id -> "acme"
3. X-Tenant-ID header (legacy)

A request without any identifier continues WITHOUT a tenant: login for
platform super admins and the admin API run that way. Route dependencies
decide whether a tenant is required.

Only `active` and `pending` tenants that are not soft-deleted pass.
RADIUS calls are identified by their NAS, not by a tenant header, and skip
this middleware entirely.
"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional
import logging

from app.database import SessionLocal
from app.models.tenant import Tenant

logger = logging.getLogger(__name__)

TENANT_SLUG_HEADER = "X-Tenant-Slug"
TENANT_ID_HEADER = "X-Tenant-ID"

# Hosts like www.rrnet.id / api.rrnet.id are not tenants
NON_TENANT_SUBDOMAINS = {"www", "api", "app", "admin"}

EXCLUDED_PATHS = (
    "/docs",
    "/redoc",
    "/openapi.json",
    "/health",
    "/api/v1/features",
)

# Exact paths only: /api/v1/radius/auth-attempts is a tenant route
EXCLUDED_EXACT_PATHS = {
    "/api/v1/radius/auth",
    "/api/v1/radius/acct",
}


def extract_tenant_identifier(request: Request) -> Optional[str]:
    """
    Extract tenant identifier from request headers. No database access, so
    the rate limiter can use it before the tenant is loaded.
    """
    tenant_slug = (request.headers.get(TENANT_SLUG_HEADER) or "").strip()
    if tenant_slug:
        return tenant_slug

    host = (request.headers.get("Host") or "").split(":")[0]
    parts = host.split(".")
    if len(parts) >= 3:  # subdomain.domain.tld
        subdomain = parts[0].lower()
        if subdomain and subdomain not in NON_TENANT_SUBDOMAINS and not subdomain.isdigit():
            return subdomain

    tenant_id = (request.headers.get(TENANT_ID_HEADER) or "").strip()
    if tenant_id:
        logger.debug("Using X-Tenant-ID header (legacy)")
        return tenant_id

    return None


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Resolve the tenant and put it on request.state.

    SECURITY: This is the first line of defense for tenant isolation.
    get_principal() later checks that the token's tenant matches the
    tenant resolved here.
    """

    def __init__(self, app, session_factory=SessionLocal):
        super().__init__(app)
        self.session_factory = session_factory
        self.excluded_paths = EXCLUDED_PATHS

    async def dispatch(self, request: Request, call_next):
        request.state.tenant = None
        request.state.tenant_id = None

        path = request.url.path
        if path in EXCLUDED_EXACT_PATHS or any(path.startswith(p) for p in self.excluded_paths):
            return await call_next(request)

        tenant_identifier = extract_tenant_identifier(request)
        if not tenant_identifier:
            return await call_next(request)

        # NOTE: one indexed lookup per request. The Tenant instance is
        # detached once the session closes; only read its columns.
        db = self.session_factory()
        try:
            tenant = self._load_tenant(db, tenant_identifier)
            if tenant is not None:
                db.expunge(tenant)
        finally:
            db.close()

        if tenant is None:
            logger.warning(f"Tenant not found: {tenant_identifier}")
            return JSONResponse(
                status_code=404,
                content={"error": f"Tenant not found: {tenant_identifier}"}
            )

        if not tenant.is_serving:
            logger.warning(f"Inactive tenant attempted access: {tenant.slug} ({tenant.status})")
            return JSONResponse(
                status_code=403,
                content={"error": "Tenant not active"}
            )

        request.state.tenant = tenant
        request.state.tenant_id = tenant.id

        logger.debug(f"Request for tenant: {tenant.slug} ({tenant.id})")

        return await call_next(request)

    def _load_tenant(self, db: Session, identifier: str) -> Optional[Tenant]:
        """Slug first, then id."""
        tenant = db.query(Tenant).filter(Tenant.slug == identifier).first()
        if tenant:
            return tenant
        return db.query(Tenant).filter(Tenant.id == identifier).first()
