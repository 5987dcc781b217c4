"""Request-ID and access-log middleware.

Pure ASGI (not BaseHTTPMiddleware) so WebSocket chat connections pass
through untouched.
"""

import logging
import time
import uuid

from starlette.types import ASGIApp, Receive, Scope, Send

access_logger = logging.getLogger("code_migrator.access")

# Polled or long-lived endpoints; logging them drowns everything else.
_SKIP_PREFIXES = ("/health", "/ws")


class RequestIDMiddleware:
    """Stamps every HTTP request with ``X-Request-ID`` and logs one access line.

    A client-supplied ``X-Request-ID`` is reused so traces can span the
    editor and the API; otherwise a UUID-4 is generated.  The ID is put on
    ``request.state.request_id`` for the exception handlers.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = headers.get(b"x-request-id", b"").decode() or str(uuid.uuid4())
        scope.setdefault("state", {})["request_id"] = request_id

        status_code = 0
        started = time.perf_counter()

        async def send_with_id(message: dict) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 0)
                raw_headers: list = list(message.get("headers", []))
                raw_headers.append((b"x-request-id", request_id.encode()))
                message = {**message, "headers": raw_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_with_id)
        except Exception:
            status_code = status_code or 500
            raise
        finally:
            path = scope.get("path", "")
            if not path.startswith(_SKIP_PREFIXES):
                access_logger.info(
                    "%s %s %d %.1fms rid=%s",
                    scope.get("method", "?"),
                    path,
                    status_code,
                    (time.perf_counter() - started) * 1000,
                    request_id,
                )
