"""
Recovery Middleware

Outermost layer. Anything that escapes the app and the other middleware
becomes a logged, bounded 500 JSON body instead of a dropped connection.
"""
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.middleware.request_id import REQUEST_ID_HEADER

logger = logging.getLogger(__name__)


class RecoveryMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            headers = {}
            request_id = getattr(request.state, "request_id", None)
            if request_id:
                headers[REQUEST_ID_HEADER] = request_id
            return JSONResponse(status_code=500, content={"error": "Internal server error"}, headers=headers)
