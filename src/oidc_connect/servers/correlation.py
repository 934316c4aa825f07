"""Correlation ID middleware for request tracing.

Generates a unique correlation ID per incoming HTTP request, sets it in
``request.state.correlation_id`` for application use and propagates it to
the response headers. Handlers pass it on to the flow controller, whose
log records carry it as the ``correlation_id`` attribute.

Secrets MUST NOT be logged. The correlation ID is a random UUID4 hex string.
"""

from __future__ import annotations

import logging
import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_HEADER_NAME = "X-Correlation-ID"
# Incoming ids are echoed into logs and headers, so keep them boring
_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
_logger = logging.getLogger("oidc-connect.correlation")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that attaches a per-request correlation ID."""

    def __init__(self, app, header_name: str = _HEADER_NAME) -> None:  # type: ignore[override]  # noqa: ANN001
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]  # noqa: ANN001
        incoming = request.headers.get(self.header_name)
        correlation_id = incoming if incoming and _VALID_ID.match(incoming) else uuid.uuid4().hex
        # Expose in request.state for handlers / services
        request.state.correlation_id = correlation_id
        _logger.debug(
            "%s %s", request.method, request.url.path, extra={"correlation_id": correlation_id}
        )
        response = await call_next(request)
        response.headers[self.header_name] = correlation_id
        return response
