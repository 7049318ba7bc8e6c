"""
Rate Limiting Middleware

Fixed-window counters in Redis, one window per (identifier, path).

Identifier, first match wins:
1. tenant (X-Tenant-Slug / subdomain / X-Tenant-ID, as sent)
2. user id from a valid bearer token
3. sha256 of the client IP

Limits are per endpoint prefix; auth endpoints are strict, the WA gateway
status/qr polling and the RADIUS daemon get high ceilings.

TRADEOFF: Redis down means no rate limiting (fail open). We choose
availability over strict limiting; the failure is logged on every request.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import redis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.config import get_settings
from app.core.exceptions import AuthenticationError
from app.core.security import get_jwt_manager
from app.middleware.tenant import extract_tenant_identifier
from app.utils.logging import log_security_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    limit: int
    window: int  # seconds


DEFAULT_LIMIT = RateLimit(100, 60)

# Longest matching prefix wins
ENDPOINT_LIMITS = {
    "/api/v1/auth/login": RateLimit(5, 60),
    "/api/v1/auth/register": RateLimit(3, 60),
    "/api/v1/auth/refresh": RateLimit(10, 60),
    "/api/v1/wa-gateway/": RateLimit(600, 60),
    "/api/v1/wa-gateway/connect": RateLimit(30, 60),
    "/api/v1/radius/": RateLimit(1200, 60),
}

EXCLUDED_PATHS = (
    "/docs",
    "/redoc",
    "/openapi.json",
    "/health",
)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Shared Redis client (lazy, pooled by redis-py)."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        host, _, port = settings.REDIS_ADDR.partition(":")
        _redis_client = redis.Redis(
            host=host or "localhost",
            port=int(port or 6379),
            password=settings.REDIS_PASSWORD or None,
            db=settings.REDIS_DB,
            decode_responses=True,
            socket_connect_timeout=1,
            socket_timeout=1,
        )
    return _redis_client


def limit_for(path: str) -> RateLimit:
    best = None
    for prefix, rule in ENDPOINT_LIMITS.items():
        if path.startswith(prefix) and (best is None or len(prefix) > len(best[0])):
            best = (prefix, rule)
    return best[1] if best else DEFAULT_LIMIT


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def rate_limit_identifier(request: Request) -> str:
    tenant = extract_tenant_identifier(request)
    if tenant:
        return f"tenant:{tenant}"

    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        try:
            claims = get_jwt_manager().validate_access(auth[7:].strip())
            return f"user:{claims.user_id}"
        except AuthenticationError:
            pass  # bad tokens are rejected later; count them by IP

    return "ip:" + hashlib.sha256(client_ip(request).encode()).hexdigest()[:32]


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app):
        super().__init__(app)
        self.excluded_paths = EXCLUDED_PATHS

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if any(path.startswith(p) for p in self.excluded_paths):
            return await call_next(request)

        rule = limit_for(path)
        identifier = rate_limit_identifier(request)

        result = self._hit(f"rate_limit:{identifier}:{path}", rule)
        if result is None:
            return await call_next(request)

        count, ttl = result
        remaining = max(rule.limit - count, 0)

        if count > rule.limit:
            retry_after = ttl if ttl > 0 else rule.window
            log_security_event(
                "rate_limit_exceeded",
                {"identifier": identifier, "path": path, "limit": rule.limit},
                logger,
            )
            return JSONResponse(
                status_code=429,
                content={"error": "Rate limit exceeded", "retry_after": retry_after},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(rule.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(retry_after),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(rule.limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(ttl if ttl > 0 else rule.window)
        return response

    def _hit(self, key: str, rule: RateLimit) -> Optional[Tuple[int, int]]:
        """Count this request. Returns (count, seconds left in window) or None when Redis is unavailable."""
        try:
            client = get_redis()
            count = int(client.incr(key))
            if count == 1:
                client.expire(key, rule.window)
            ttl = int(client.ttl(key))
            if ttl < 0:
                # Key lost its expiry (crash between INCR and EXPIRE)
                client.expire(key, rule.window)
                ttl = rule.window
            return count, ttl
        except redis.RedisError as e:
            logger.warning(f"Rate limiting skipped, Redis unavailable: {e}")
            return None
