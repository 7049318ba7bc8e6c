"""
CSRF Middleware

Double-submit cookie: safe requests get a `csrf_token` cookie; unsafe
requests that carry cookies must echo it in the X-CSRF-Token header.

Bearer-token API calls bypass the check (a browser never attaches the
Authorization header on its own). Requests without any cookie have no
ambient credentials to abuse and pass as well.
"""
import hmac
import logging
import secrets

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.config import get_settings

logger = logging.getLogger(__name__)

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}

EXEMPT_PATHS = (
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/auth/refresh",
    "/api/v1/radius/",
    "/health",
)


class CSRFMiddleware(BaseHTTPMiddleware):
    def __init__(self, app):
        super().__init__(app)
        self.exempt_paths = EXEMPT_PATHS
        self.secure_cookie = get_settings().is_production

    async def dispatch(self, request: Request, call_next):
        if request.method in SAFE_METHODS:
            response = await call_next(request)
            if CSRF_COOKIE not in request.cookies:
                response.set_cookie(
                    CSRF_COOKIE,
                    secrets.token_urlsafe(32),
                    httponly=False,  # the SPA reads it to fill the header
                    samesite="strict",
                    secure=self.secure_cookie,
                )
            return response

        if self._bypass(request):
            return await call_next(request)

        cookie = request.cookies.get(CSRF_COOKIE, "")
        header = request.headers.get(CSRF_HEADER, "")
        if not cookie or not header or not hmac.compare_digest(cookie, header):
            logger.warning(f"CSRF check failed: {request.method} {request.url.path}")
            return JSONResponse(status_code=403, content={"error": "CSRF token missing or invalid"})

        return await call_next(request)

    def _bypass(self, request: Request) -> bool:
        if any(request.url.path.startswith(p) for p in self.exempt_paths):
            return True
        if request.headers.get("Authorization", "").lower().startswith("bearer "):
            return True
        return not request.cookies
