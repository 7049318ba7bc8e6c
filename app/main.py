"""
Main FastAPI Application

Entry point for the RRNet ISP control plane.
Configures middleware, routes, error handlers, and startup/shutdown events.

Request pipeline, outermost first:

    Recovery -> SecurityHeaders -> CORS -> Timeout -> BodySize -> RequestID
        -> CSRF -> RateLimit -> Tenant -> route dependencies -> handler

Starlette runs the LAST added middleware first, so add_middleware() below
is called in the reverse of that order.
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager

from app.config import get_settings
from app.database import engine, check_db, init_db
from app.middleware.body_size import BodySizeLimitMiddleware
from app.middleware.csrf import CSRFMiddleware
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.recovery import RecoveryMiddleware
from app.middleware.request_id import RequestIDMiddleware
from app.middleware.security_headers import SecurityHeadersMiddleware
from app.middleware.tenant import TenantMiddleware
from app.middleware.timeout import RequestTimeoutMiddleware
from app.services.schedulers import start_schedulers, stop_schedulers
from app.utils.logging import setup_logging, get_logger
from app.core.exceptions import AppError, TenantIsolationError

# Import routers
from app.api.endpoints import (
    admin,
    auth,
    billing,
    campaigns,
    clients,
    entitlements,
    radius,
    users,
    wa_gateway,
)

VERSION = "1.0.0"

settings = get_settings()

# Setup logging
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.is_production
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: tables (dev/test only), then the background schedulers.
    Shutdown: schedulers first so none of them holds a connection, then
    the engine.
    """
    logger.info(f"Starting application in {settings.APP_ENV} mode")

    # Initialize database tables (dev only - use migrations in production)
    if settings.APP_ENV in ("development", "test"):
        logger.warning("Initializing database tables (dev mode)")
        init_db()

    if settings.SCHEDULERS_ENABLED:
        start_schedulers(settings)

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    if settings.SCHEDULERS_ENABLED:
        stop_schedulers(timeout=settings.shutdown_timeout.total_seconds())
    engine.dispose()
    logger.info("Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="RRNet Control Plane",
    description="Multi-tenant ISP management: billing, isolation, WhatsApp campaigns and RADIUS",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# ============================================================================
# MIDDLEWARE CONFIGURATION
# ============================================================================

# Innermost: tenant context for the route dependencies
app.add_middleware(TenantMiddleware)

# Keys on the raw tenant header, so it runs before the tenant is loaded
app.add_middleware(RateLimitMiddleware)

app.add_middleware(CSRFMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(BodySizeLimitMiddleware)

# SERVER_READ_TIMEOUT / SERVER_WRITE_TIMEOUT; idle and shutdown go to uvicorn below
app.add_middleware(RequestTimeoutMiddleware)

# SECURITY: origins come from CORS_ORIGINS; never "*" with credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Tenant-Slug", "X-Tenant-ID",
                   "X-Request-ID", "X-CSRF-Token"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining",
                    "X-RateLimit-Reset", "Retry-After"],
)

app.add_middleware(SecurityHeadersMiddleware)

# Outermost: anything unhandled below becomes a 500 JSON body
app.add_middleware(RecoveryMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(TenantIsolationError)
async def tenant_isolation_error_handler(request: Request, exc: TenantIsolationError):
    """
    Handle tenant isolation violations.

    CRITICAL: These should be logged and alerted on immediately.
    """
    logger.error(
        f"TENANT ISOLATION VIOLATION: {exc.detail}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "tenant_id": getattr(request.state, "tenant_id", None)
        }
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """Typed domain errors: {"error": message, **payload}."""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, **exc.payload},
        headers=exc.headers or {}
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Framework errors (404 unknown route, 405) in the same body shape."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None) or {}
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Body/query validation failures are 400, with the first problem as the message."""
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return JSONResponse(status_code=400, content={"error": message})


# ============================================================================
# ROUTES
# ============================================================================

@app.get("/health", tags=["health"])
async def health_check():
    """
    Health check endpoint for load balancers.

    503 when the database does not answer.
    """
    db_ok = check_db()
    body = {
        "status": "healthy" if db_ok else "unhealthy",
        "database": "ok" if db_ok else "unavailable",
        "environment": settings.APP_ENV,
        "version": VERSION
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=body)


@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "message": "RRNet Control Plane API",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health"
    }


# Register API routers under /api/v1
app.include_router(auth.router, prefix="/api/v1")
app.include_router(users.router, prefix="/api/v1")
app.include_router(entitlements.router, prefix="/api/v1")
app.include_router(admin.router, prefix="/api/v1")
app.include_router(clients.router, prefix="/api/v1")
app.include_router(billing.router, prefix="/api/v1")
app.include_router(campaigns.router, prefix="/api/v1")
app.include_router(wa_gateway.router, prefix="/api/v1")
app.include_router(radius.router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 80)
    logger.info("RRNet Control Plane")
    logger.info("=" * 80)
    logger.info(f"Environment: {settings.APP_ENV}")
    logger.info(f"Debug: {settings.DEBUG}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")
    logger.info("=" * 80)

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=settings.APP_PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
        timeout_keep_alive=int(settings.idle_timeout.total_seconds()),
        timeout_graceful_shutdown=int(settings.shutdown_timeout.total_seconds()),
    )
