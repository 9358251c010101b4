"""Request context middleware: a request ID on every log line.

Handlers of concurrent requests interleave on one event loop, and so do
their log lines.  Every record is stamped with the ID of the request
that produced it, taken from the X-Request-ID header or generated here.

The ID lives in a ContextVar, not a thread-local: requests share the
loop's thread, but each asyncio task has its own context.  Tasks copy
the context they are CREATED in, so the detached telemetry tasks a
handler spawns keep logging under that handler's request ID after the
response has gone out.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class _RequestContextFilter(logging.Filter):
    """Adds ``request_id`` to every LogRecord.

    A filter, not a formatter, because formatters can only read fields
    that are already on the record.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("-")  # type: ignore[attr-defined]
        return True


def install_request_context_filter(target: logging.Logger | logging.Handler) -> None:
    if not any(isinstance(f, _RequestContextFilter) for f in target.filters):
        target.addFilter(_RequestContextFilter())


# Logger filters do not apply to records propagated from child loggers,
# so setup_logging() also installs the filter on its handler.
install_request_context_filter(logging.getLogger())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a request ID, times the request and logs one summary line."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        token = request_id_var.set(req_id)
        try:
            start = time.monotonic()
            response = await call_next(request)
            duration_ms = round((time.monotonic() - start) * 1000, 1)

            logger.info(
                "%s %s → %d (%.1fms)",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "request_id": req_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
            response.headers["X-Request-ID"] = req_id
            return response
        finally:
            request_id_var.reset(token)
