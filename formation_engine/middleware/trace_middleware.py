"""
Trace ID Middleware for Request Tracking

Generates or extracts trace IDs from incoming requests and binds them to
structlog context for automatic inclusion in all logs.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

TRACE_HEADER = "X-Trace-Id"


class TraceMiddleware(BaseHTTPMiddleware):
    """
    Bind a trace id to the structlog context for the duration of a request.

    - Reuses X-Trace-Id from the request when present, otherwise generates one
    - Echoes the trace id back in the X-Trace-Id response header
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        trace_id = request.headers.get(TRACE_HEADER) or str(uuid.uuid4())
        request.state.trace_id = trace_id

        with structlog.contextvars.bound_contextvars(trace_id=trace_id, path=request.url.path):
            response = await call_next(request)

        response.headers[TRACE_HEADER] = trace_id
        return response
