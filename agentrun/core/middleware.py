"""Request context middleware.

Every request gets an ``x-request-id`` (propagated from the gateway or
generated here) and the caller's ``x-user-id`` bound as ``owner_id``, so
logs written while handling it, engine logs included, carry both.
"""

import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from agentrun.core.logging import get_logger, owner_id_var, request_id_var, run_id_var

logger = get_logger(__name__)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request_id_var.set(request_id)
        owner_id_var.set(request.headers.get("x-user-id"))
        run_id_var.set(None)

        started = time.perf_counter()
        response = await call_next(request)
        response.headers["x-request-id"] = request_id

        # Streaming responses are logged when headers go out, not when the stream ends.
        logger.debug(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response
