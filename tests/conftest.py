"""Shared fixtures: fake clock, in-memory stores and a scripted provider."""

from __future__ import annotations

import dataclasses
from typing import Any, Callable, Iterable
from urllib.parse import urlencode

import pytest

from oidc_connect.flow.models import TokenSet
from oidc_connect.flow.providers import ProviderRegistry
from oidc_connect.flow.service import AuthorizationFlowController
from oidc_connect.flow.session import MemorySessionStore
from oidc_connect.flow.settings import OpenIDConnectSettings, RegistrationPolicy
from oidc_connect.flow.store import MemoryUserStore


def pytest_addoption(parser):
    """Add integration option to pytest."""
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="run integration tests",
    )


SESSION_KEY = "browser-session-0123456789abcdef0123456789abcdef"


class FakeClock:
    """Settable clock returning *now*."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """ProviderClient returning a scripted TokenSet (or raising an error)."""

    def __init__(
        self,
        provider_id: str = "keycloak",
        label: str = "Keycloak",
        *,
        end_session: bool = True,
    ) -> None:
        self.provider_id = provider_id
        self.label = label
        self.supports_end_session = end_session
        self.result: TokenSet | Exception = make_tokens()
        self.exchanged: list[str] = []

    def authorize_url(self, scopes: Iterable[str], state: str) -> str:
        query = urlencode({"scope": " ".join(scopes), "state": state})
        return f"https://idp.example.com/{self.provider_id}/auth?{query}"

    def exchange(self, code: str) -> TokenSet:
        self.exchanged.append(code)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result

    def end_session_url(
        self, id_token: str | None, post_logout_redirect_uri: str | None = None
    ) -> str | None:
        if not self.supports_end_session:
            return None
        params = {"id_token_hint": id_token, "post_logout_redirect_uri": post_logout_redirect_uri}
        query = urlencode({k: v for k, v in params.items() if v})
        return f"https://idp.example.com/{self.provider_id}/logout?{query}"


def make_tokens(
    sub: str | None = "sub-1",
    *,
    email: str | None = "alice@example.com",
    name: str | None = "Alice",
    userinfo: dict[str, Any] | None = None,
    **extra: Any,
) -> TokenSet:
    claims: dict[str, Any] = {k: v for k, v in {"sub": sub, "email": email, "name": name}.items() if v is not None}
    claims.update(extra)
    return TokenSet(
        id_token="header.payload.signature",
        access_token="access-token-value",
        claims=claims,
        userinfo=userinfo or {},
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def users() -> MemoryUserStore:
    return MemoryUserStore()


@pytest.fixture()
def sessions() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def settings() -> OpenIDConnectSettings:
    return OpenIDConnectSettings(user_register=RegistrationPolicy.VISITORS)


@pytest.fixture()
def make_controller(
    settings: OpenIDConnectSettings,
    provider: FakeProvider,
    users: MemoryUserStore,
    sessions: MemorySessionStore,
    clock: FakeClock,
) -> Callable[..., AuthorizationFlowController]:
    """Return a factory; keyword arguments override individual settings."""

    def _make(*extra_providers: FakeProvider, **overrides: Any) -> AuthorizationFlowController:
        return AuthorizationFlowController(
            dataclasses.replace(settings, **overrides),
            ProviderRegistry([provider, *extra_providers]),
            users,
            users,
            sessions,
            clock=clock,
        )

    return _make


@pytest.fixture()
def controller(make_controller) -> AuthorizationFlowController:  # noqa: ANN001
    return make_controller()


@pytest.fixture()
def tokens() -> Callable[..., TokenSet]:
    """``tokens(sub, email=..., name=..., userinfo=...)`` builds a TokenSet."""
    return make_tokens


@pytest.fixture()
def provider_factory() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture()
def session_key() -> str:
    return SESSION_KEY
