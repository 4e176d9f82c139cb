import json
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("booking_dispatch.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON line per request, tagged with X-Request-Id."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id

        line = {"request_id": request_id, "method": request.method, "path": request.url.path}
        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception:
            line.update(status=500, duration_ms=round((time.perf_counter() - start) * 1000, 2))
            logger.error(json.dumps(line))
            raise

        response.headers["X-Request-Id"] = request_id
        line.update(
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            user_sub=getattr(request.state, "user_sub", None),
        )
        logger.info(json.dumps(line, default=str))
        return response
