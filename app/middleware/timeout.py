"""
Request Timeout Middleware

Server-side deadlines from SERVER_READ_TIMEOUT and SERVER_WRITE_TIMEOUT:

- read: the whole request body must arrive within read_timeout of the
  request starting, else 408.
- write: the handler must produce its response within write_timeout,
  else 503. A response that already started is left to finish.

Idle keep-alive and graceful shutdown are uvicorn's job (see app.main).
"""
import asyncio
import logging

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.config import get_settings

logger = logging.getLogger(__name__)


class RequestReadTimeout(Exception):
    pass


class RequestTimeoutMiddleware:
    def __init__(self, app: ASGIApp, read_timeout: float = None, write_timeout: float = None):
        self.app = app
        settings = get_settings()
        self.read_timeout = read_timeout if read_timeout is not None else settings.read_timeout.total_seconds()
        self.write_timeout = write_timeout if write_timeout is not None else settings.write_timeout.total_seconds()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        loop = asyncio.get_running_loop()
        read_deadline = loop.time() + self.read_timeout
        path = scope.get("path", "")
        state = {"body_done": False, "read_timed_out": False, "started": False, "replaced": False}

        async def timed_receive() -> Message:
            # After the body, receive() only waits for a disconnect
            if state["body_done"]:
                return await receive()
            try:
                message = await asyncio.wait_for(receive(), timeout=max(read_deadline - loop.time(), 0))
            except asyncio.TimeoutError:
                state["read_timed_out"] = True
                logger.warning(f"Request body read timed out after {self.read_timeout}s on {path}")
                raise RequestReadTimeout()
            if message["type"] != "http.request" or not message.get("more_body", False):
                state["body_done"] = True
            return message

        async def guarded_send(message: Message) -> None:
            if state["read_timed_out"] and not state["started"]:
                if message["type"] == "http.response.start" and not state["replaced"]:
                    await self._reply(scope, receive, send, state, 408, "Request timeout")
                return
            if message["type"] == "http.response.start":
                state["started"] = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, timed_receive, guarded_send), timeout=self.write_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Handler exceeded write timeout of {self.write_timeout}s on {scope['method']} {path}")
            if not state["started"]:
                await self._reply(scope, receive, send, state, 503, "Request timed out")
        except Exception:
            if not state["read_timed_out"] or state["started"]:
                raise
            await self._reply(scope, receive, send, state, 408, "Request timeout")

    async def _reply(self, scope, receive, send, state, status_code: int, error: str) -> None:
        if state["replaced"]:
            return
        state["replaced"] = True
        await JSONResponse(status_code=status_code, content={"error": error})(scope, receive, send)
