"""Browser-facing OpenID Connect endpoints.

Handlers are intentionally thin:

1. Parse and validate HTTP-layer parameters.
2. Delegate business logic to ``AuthorizationFlowController``.
3. Return an appropriate Starlette ``Response`` type.

The base path is configurable (default: ``/openid-connect``) so that
reverse-proxies can mount the application under arbitrary prefixes.

SECURITY NOTE
-------------
• No raw secrets (state, authorization codes, id / access tokens, client
  secrets) are ever logged.
• Correlation IDs, if present in ``request.state.correlation_id``, are
  included in INFO logs to aid troubleshooting.
• Destinations are internal paths only; anything with a scheme or host is
  replaced by ``/``.

This module is HTTP-only and MUST remain free from heavy business logic.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlsplit

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from oidc_connect.flow.errors import AccessDeniedError, SequenceError
from oidc_connect.flow.models import Operation
from oidc_connect.flow.service import AuthorizationFlowController

_LOG = logging.getLogger("oidc-connect.auth.routes")


def _html_page(title: str, body: str, status: int = 200) -> HTMLResponse:
    """Return a tiny success / error HTML page."""
    content = (
        "<!doctype html><html lang='en'>"
        "<head><meta charset='utf-8'><title>"
        f"{title}</title></head><body><h1>{title}</h1><p>{body}</p></body></html>"
    )
    return HTMLResponse(content, status_code=status)


def _forbidden(body: str = "You are not authorized to access this page.") -> HTMLResponse:
    return _html_page("Access denied", body, 403)


def _not_found() -> HTMLResponse:
    return _html_page("Page not found", "The requested page could not be found.", 404)


def _correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None)


def _local_destination(raw: str | None, default: str = "/") -> str:
    """Return *raw* if it is an internal path (with query), else *default*."""
    if not raw:
        return default
    parts = urlsplit(raw)
    if parts.scheme or parts.netloc or raw.startswith("//") or "\\" in raw:
        return default
    return raw


def _locale(request: Request) -> str | None:
    explicit = request.query_params.get("locale")
    if explicit:
        return explicit
    accept = request.headers.get("accept-language", "")
    first = accept.split(",")[0].split(";")[0].strip()
    return first or None


# --------------------------------------------------------------------------- #
# Public API                                                                  #
# --------------------------------------------------------------------------- #
def register_openid_connect_routes(
    app: Starlette,
    controller: AuthorizationFlowController,
    *,
    base_path: str = "/openid-connect",
) -> None:
    """Attach the OpenID Connect endpoints to *app* under *base_path*."""
    base_path = "/" + base_path.strip("/")

    def _user_id(request: Request) -> str | None:
        return controller.current_user_id(request.state.session_key)

    def _initiate(request: Request, operation: Operation, user_id: str | None, default: str) -> Response:
        provider_id = request.path_params["provider"]
        try:
            authorize_url = controller.initiate(
                request.state.session_key,
                provider_id,
                operation,
                acting_user_id=user_id,
                destination=_local_destination(request.query_params.get("destination"), default),
                locale=_locale(request),
                correlation_id=_correlation_id(request),
            )
        except SequenceError:
            return _not_found()

        _LOG.info(
            "Authorization start provider=%s op=%s correlation_id=%s",
            provider_id,
            operation.value,
            _correlation_id(request) or "-",
        )
        if request.query_params.get("format") == "json":
            return JSONResponse({"authorize_url": authorize_url})
        # 303 See Other for GET safety across methods
        return RedirectResponse(authorize_url, status_code=303)

    # ----- GET /openid-connect/login -------------------------------------- #
    async def _login_options(request: Request) -> Response:  # noqa: D401
        options = controller.login_options()
        for provider in options["providers"]:
            provider["login_url"] = f"{base_path}/{provider['id']}/login"
        return JSONResponse(options)

    # ----- GET /openid-connect/accounts ----------------------------------- #
    async def _accounts(request: Request) -> Response:  # noqa: D401
        user_id = _user_id(request)
        if not user_id:
            return _forbidden()
        return JSONResponse(
            {
                "user_id": user_id,
                "accounts": controller.connected_accounts(user_id),
                "can_set_password": controller.linker.has_set_password_access(user_id),
            }
        )

    # ----- GET /openid-connect/messages ----------------------------------- #
    async def _messages(request: Request) -> Response:  # noqa: D401
        messages = controller.pop_messages(request.state.session_key)
        return JSONResponse({"messages": [m.to_dict() for m in messages]})

    # ----- GET /openid-connect/logout ------------------------------------- #
    async def _logout(request: Request) -> Response:  # noqa: D401
        target = controller.settings.redirect_logout or "/"
        if not urlsplit(target).scheme:
            target = str(request.base_url).rstrip("/") + "/" + target.lstrip("/")
        outcome = controller.logout(request.state.session_key, post_logout_redirect_uri=target)
        _LOG.info(
            "Logout end_session=%d correlation_id=%s",
            len(outcome.end_session_urls),
            _correlation_id(request) or "-",
        )
        return RedirectResponse(outcome.redirect_url, status_code=302)

    # ----- GET /openid-connect/{provider}/login --------------------------- #
    async def _start_login(request: Request) -> Response:  # noqa: D401
        return _initiate(request, Operation.LOGIN, None, "/")

    # ----- GET /openid-connect/{provider}/connect ------------------------- #
    async def _start_connect(request: Request) -> Response:  # noqa: D401
        user_id = _user_id(request)
        if not user_id:
            return _forbidden("You must be logged in to connect an account.")
        return _initiate(request, Operation.CONNECT, user_id, "user")

    # ----- GET /openid-connect/{provider} (callback) ---------------------- #
    async def _callback(request: Request) -> Response:  # noqa: D401
        provider_id = request.path_params["provider"]
        params = request.query_params
        try:
            outcome = controller.callback(
                request.state.session_key,
                provider_id,
                state=params.get("state"),
                code=params.get("code"),
                error=params.get("error"),
                error_description=params.get("error_description"),
                current_user_id=_user_id(request),
                correlation_id=_correlation_id(request),
            )
        except AccessDeniedError:
            return _forbidden()
        except SequenceError:
            return _not_found()

        _LOG.info(
            "Callback provider=%s outcome=%s correlation_id=%s",
            provider_id,
            outcome.state.value,
            _correlation_id(request) or "-",
        )
        if outcome.session_key:
            # login moved the session; the middleware re-issues the cookie
            request.state.session_key = outcome.session_key
        response = RedirectResponse(outcome.redirect_path, status_code=302)
        if outcome.locale:
            response.headers["Content-Language"] = outcome.locale
        return response

    # ----- POST /openid-connect/{provider}/disconnect --------------------- #
    async def _disconnect(request: Request) -> Response:  # noqa: D401
        provider_id = request.path_params["provider"]
        user_id = _user_id(request)
        if not user_id:
            return _forbidden()
        try:
            payload: dict[str, Any] = await request.json()
        except ValueError:
            payload = {}
        target = str(payload.get("user_id") or user_id) if isinstance(payload, dict) else user_id

        try:
            controller.disconnect(target, provider_id, acting_user_id=user_id)
        except AccessDeniedError:
            return _forbidden()
        _LOG.info(
            "Disconnected provider=%s correlation_id=%s",
            provider_id,
            _correlation_id(request) or "-",
        )
        return Response(status_code=204)

    # Fixed paths first: "/{provider}" would otherwise swallow them
    app.add_route(f"{base_path}/login", _login_options, methods=["GET"])
    app.add_route(f"{base_path}/accounts", _accounts, methods=["GET"])
    app.add_route(f"{base_path}/messages", _messages, methods=["GET"])
    app.add_route(f"{base_path}/logout", _logout, methods=["GET"])
    app.add_route(f"{base_path}/{{provider}}/login", _start_login, methods=["GET"])
    app.add_route(f"{base_path}/{{provider}}/connect", _start_connect, methods=["GET"])
    app.add_route(f"{base_path}/{{provider}}/disconnect", _disconnect, methods=["POST"])
    app.add_route(f"{base_path}/{{provider}}", _callback, methods=["GET"])
