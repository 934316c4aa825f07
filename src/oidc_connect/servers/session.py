"""Browser-session cookie middleware.

Every request gets an opaque session key in ``request.state.session_key``.
The key is read from the ``oidc_session`` cookie. A missing or malformed
cookie, or one naming a session the store does not hold, is replaced by a
fresh random key. A handler that moves the session to a new key (login)
assigns it to ``request.state.session_key``; the cookie is then re-issued.
All server-side state lives in the
:class:`~oidc_connect.flow.session.SessionStore` keyed by this value.
"""

from __future__ import annotations

import logging
import re

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from oidc_connect.flow.session import SessionStore, new_session_key

SESSION_COOKIE = "oidc_session"
_VALID_KEY = re.compile(r"^[A-Za-z0-9_-]{32,128}$")
_logger = logging.getLogger("oidc-connect.session")

__all__ = ["SESSION_COOKIE", "FlowSessionMiddleware"]


class FlowSessionMiddleware(BaseHTTPMiddleware):
    """Attach a browser session key to each request."""

    def __init__(  # type: ignore[override]
        self,
        app,  # noqa: ANN001
        *,
        store: SessionStore | None = None,
        cookie_name: str = SESSION_COOKIE,
        https_only: bool = False,
        max_age: int | None = None,
    ) -> None:
        super().__init__(app)
        self.store = store
        self.cookie_name = cookie_name
        self.https_only = https_only
        self.max_age = max_age

    def _trusted(self, session_key: str | None) -> bool:
        if not session_key or not _VALID_KEY.match(session_key):
            return False
        return self.store is None or self.store.exists(session_key)

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]  # noqa: ANN001
        incoming = request.cookies.get(self.cookie_name)
        session_key = incoming if self._trusted(incoming) else new_session_key()
        if session_key != incoming:
            _logger.debug("Issued new browser session")
        request.state.session_key = session_key

        response = await call_next(request)
        current = request.state.session_key
        if current != incoming:
            response.set_cookie(
                self.cookie_name,
                current,
                max_age=self.max_age,
                path="/",
                secure=self.https_only,
                httponly=True,
                samesite="lax",
            )
        return response
