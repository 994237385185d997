"""Correlation id middleware + last-resort error boundary.

Takes the inbound X-Request-Id (when shorter than 200 chars) or mints a
UUID4, exposes it on request.state and in the logging context, and echoes
it on every response. Unhandled exceptions are logged with the id and
turned into a masked 500 JSON payload.
"""

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from app.logging_config import reset_request_id, set_request_id

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
MAX_INBOUND_LENGTH = 200


def resolve_request_id(inbound: str | None) -> str:
    inbound = (inbound or "").strip()
    if inbound and len(inbound) < MAX_INBOUND_LENGTH:
        return inbound
    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Propagate a correlation id through logs and response headers."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        token = set_request_id(request_id)
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "Unhandled error on %s %s",
                    request.method,
                    request.url.path,
                    extra={"event": "chat_error", "user_id": getattr(request.state, "user_sub", None)},
                )
                response = JSONResponse(
                    {"ok": False, "error": "Server error", "requestId": request_id},
                    status_code=500,
                )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            reset_request_id(token)
