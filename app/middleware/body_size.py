"""
Body Size Middleware

Three ceilings, all in bytes: raw body (MAX_REQUEST_SIZE), JSON
(MAX_JSON_SIZE) and multipart uploads (MAX_MULTIPART_SIZE). A declared
Content-Length is checked up front; a chunked body is counted while it
streams and the request is cut off as soon as it crosses the limit.

Pure ASGI rather than BaseHTTPMiddleware: the check has to sit on
receive() itself. The route sees a failed body read, which FastAPI turns
into a 400; that response is replaced with the 413 on the way out.
"""
import logging

from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.config import get_settings

logger = logging.getLogger(__name__)

BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class BodyTooLarge(Exception):
    pass


def too_large_response(limit: int) -> JSONResponse:
    return JSONResponse(
        status_code=413,
        content={"error": f"Request body too large (limit {limit} bytes)"},
    )


class BodySizeLimitMiddleware:
    def __init__(self, app: ASGIApp, max_request: int = None, max_json: int = None, max_multipart: int = None):
        self.app = app
        settings = get_settings()
        self.max_request = max_request or settings.MAX_REQUEST_SIZE
        self.max_json = max_json or settings.MAX_JSON_SIZE
        self.max_multipart = max_multipart or settings.MAX_MULTIPART_SIZE

    def limit_for(self, content_type: str) -> int:
        content_type = (content_type or "").lower()
        if content_type.startswith("multipart/"):
            return self.max_multipart
        if "json" in content_type:
            return self.max_json
        return self.max_request

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] not in BODY_METHODS:
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        limit = self.limit_for(headers.get("content-type", ""))
        path = scope.get("path", "")

        declared = headers.get("content-length")
        if declared is not None:
            try:
                size = int(declared)
            except ValueError:
                await JSONResponse(status_code=400, content={"error": "Invalid Content-Length"})(scope, receive, send)
                return
            if size > limit:
                logger.warning(f"Request body too large: {size} > {limit} bytes on {path}")
                await too_large_response(limit)(scope, receive, send)
                return

        state = {"received": 0, "too_large": False, "started": False, "replaced": False}

        async def counting_receive() -> Message:
            message = await receive()
            if message["type"] == "http.request":
                state["received"] += len(message.get("body", b""))
                if state["received"] > limit:
                    state["too_large"] = True
                    logger.warning(f"Request body too large: over {limit} bytes on {path} (streamed)")
                    raise BodyTooLarge()
            return message

        async def replacing_send(message: Message) -> None:
            if state["too_large"] and not state["started"]:
                if message["type"] == "http.response.start" and not state["replaced"]:
                    state["replaced"] = True
                    await too_large_response(limit)(scope, receive, send)
                return
            if message["type"] == "http.response.start":
                state["started"] = True
            await send(message)

        try:
            await self.app(scope, counting_receive, replacing_send)
        except Exception:
            if not state["too_large"] or state["started"]:
                raise
            if not state["replaced"]:
                state["replaced"] = True
                await too_large_response(limit)(scope, receive, send)
