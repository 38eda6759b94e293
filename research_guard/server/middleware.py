"""Correlation ID middleware."""

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
INTERNAL_ERROR = "INTERNAL_ERROR"


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """Tag every request and response with a correlation id.

    Unhandled errors become a generic 500 carrying the correlation id so
    support can find the matching log line; no stack trace is returned.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        try:
            response: Response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error for %s %s [%s]", request.method, request.url.path, correlation_id)
            response = JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "code": INTERNAL_ERROR,
                    "correlationId": correlation_id,
                },
            )

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
