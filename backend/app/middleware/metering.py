"""Metering middleware — records chat request metrics in Redis buckets.

After every POST /api/chat response (including 401 and 429 rejections):
1. Read the chat mode the handler attached to request.state (else "unknown")
2. Measure latency and take the final status code
3. Fire-and-forget a Redis bucket write
Response is returned to client BEFORE the Redis write happens.
"""

import asyncio
import logging
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from app.services.metrics import record_chat_metric

logger = logging.getLogger(__name__)

METERED_ROUTES = {("POST", "/api/chat")}

# Strong references so pending metric writes are not garbage collected.
_pending: set[asyncio.Task] = set()


class MeteringMiddleware(BaseHTTPMiddleware):
    """Track mode, status and latency for every chat request."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if (request.method, request.url.path) not in METERED_ROUTES:
            return await call_next(request)

        started = time.time()
        try:
            response = await call_next(request)
        except Exception:
            self._schedule(request, started, 500)
            raise

        self._schedule(request, started, response.status_code)
        return response

    def _schedule(self, request: Request, started: float, status: int) -> None:
        redis = getattr(request.app.state, "redis", None)
        if not redis:
            return

        task = asyncio.create_task(
            record_chat_metric(
                redis,
                now_seconds=started,
                mode=getattr(request.state, "chat_mode", None) or "unknown",
                status=status,
                latency_ms=(time.time() - started) * 1000,
                rate_limited=bool(getattr(request.state, "rate_limited", False)),
            )
        )
        _pending.add(task)
        task.add_done_callback(_pending.discard)
