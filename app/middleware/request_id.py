"""
Request ID Middleware

Every response carries X-Request-ID (the caller's, if sane, otherwise a
fresh uuid4) and X-Process-Time. The id is also put on a contextvar so
every log record of the request carries it.
"""
import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.utils.logging import reset_request_id, set_request_id

logger = logging.getLogger("app.access")

REQUEST_ID_HEADER = "X-Request-ID"
_VALID_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = incoming if _VALID_ID.match(incoming) else str(uuid.uuid4())
        request.state.request_id = request_id

        token = set_request_id(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - start
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers["X-Process-Time"] = f"{elapsed:.4f}"
            logger.info(
                f"{request.method} {request.url.path} {response.status_code} {elapsed * 1000:.1f}ms",
                extra={"tenant_id": getattr(request.state, "tenant_id", None)},
            )
            return response
        finally:
            reset_request_id(token)
