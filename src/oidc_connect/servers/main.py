"""Starlette application factory for the OpenID Connect service."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from oidc_connect.flow.providers import ProviderRegistry
from oidc_connect.flow.service import AuthorizationFlowController
from oidc_connect.flow.session import DiskSessionStore, MemorySessionStore, SessionStore
from oidc_connect.flow.settings import OpenIDConnectSettings
from oidc_connect.flow.store import DiskUserStore, MemoryUserStore
from oidc_connect.utils.environment import env_flag, env_str
from oidc_connect.utils.logging import setup_logging

from .auth import register_openid_connect_routes
from .correlation import CorrelationIdMiddleware
from .session import FlowSessionMiddleware

logger = logging.getLogger("oidc-connect.server.main")


async def health_check(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


def _session_store(settings: OpenIDConnectSettings) -> SessionStore:
    # Sessions must outlive an abandoned flow by a comfortable margin
    ttl = max(3600, settings.flow_ttl_seconds * 2)
    if settings.session_backend == "disk":
        return DiskSessionStore(settings.storage_dir, ttl=ttl)
    return MemorySessionStore(ttl=ttl)


def create_app(
    settings: OpenIDConnectSettings | None = None,
    *,
    store: MemoryUserStore | DiskUserStore | None = None,
    session_store: SessionStore | None = None,
    providers: ProviderRegistry | None = None,
    base_path: str = "/openid-connect",
) -> Starlette:
    """Build the ASGI application.

    Anything not passed in is derived from *settings*, which in turn
    defaults to :meth:`OpenIDConnectSettings.from_env`.
    """
    settings = settings or OpenIDConnectSettings.from_env()
    if store is None:
        store = DiskUserStore(settings.storage_dir)
    if session_store is None:
        session_store = _session_store(settings)
    if providers is None:
        providers = ProviderRegistry.from_definitions(settings.providers)

    controller = AuthorizationFlowController(
        settings, providers, store, store, session_store
    )

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info(
            "OpenID Connect server starting: providers=%s session_backend=%s",
            [client.provider_id for client in providers],
            settings.session_backend,
        )
        if not len(providers):
            logger.warning("No OpenID Connect providers are enabled.")
        if isinstance(session_store, DiskSessionStore):
            logger.info("Removed %d expired browser sessions", session_store.sweep())
        yield
        logger.info("OpenID Connect server shutting down.")

    app = Starlette(
        routes=[Route("/healthz", health_check, methods=["GET"])],
        middleware=[
            Middleware(CorrelationIdMiddleware),
            Middleware(
                FlowSessionMiddleware,
                store=session_store,
                https_only=env_flag("OIDC_SESSION_COOKIE_SECURE"),
            ),
        ],
        lifespan=lifespan,
    )
    app.state.controller = controller
    register_openid_connect_routes(app, controller, base_path=base_path)
    return app


def app_from_env() -> Starlette:
    """ASGI factory: ``uvicorn --factory oidc_connect.servers.main:app_from_env``."""
    setup_logging(env_str("OIDC_LOG_LEVEL", "INFO").upper())
    return create_app()
