"""Provider clients: authorize URL, code exchange and end-session URL.

A :class:`ProviderClient` is everything the flow needs from an identity
provider. Variants per provider type are plain subclasses of
:class:`GenericOIDCClient`, looked up in the static :data:`PROVIDER_TYPES`
table; :class:`ProviderRegistry` holds one client per configured
provider id.

Back-channel calls use :mod:`requests` with a ``(connect, read)`` timeout.
Token values and client secrets are never logged.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Final, Iterable, Iterator, Protocol, runtime_checkable
from urllib.parse import urlencode

import jwt
import requests

from oidc_connect.flow.claims import normalize_scopes
from oidc_connect.flow.errors import ConfigError, ProviderError
from oidc_connect.flow.models import TokenSet
from oidc_connect.flow.settings import ProviderDefinition

_LOG = logging.getLogger("oidc-connect.flow.providers")

_ID_TOKEN_ALGORITHMS: Final[list[str]] = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]
_JWT_LEEWAY_SECONDS: Final[int] = 30


@runtime_checkable
class ProviderClient(Protocol):
    """Capability interface of one configured provider."""

    @property
    def provider_id(self) -> str: ...

    @property
    def label(self) -> str: ...

    @property
    def supports_end_session(self) -> bool: ...

    def authorize_url(self, scopes: Iterable[str], state: str) -> str: ...
    def exchange(self, code: str) -> TokenSet: ...
    def end_session_url(
        self, id_token: str | None, post_logout_redirect_uri: str | None = None
    ) -> str | None: ...


def _append_query(base: str, params: dict[str, str]) -> str:
    sep = "&" if "?" in base else "?"
    return f"{base}{sep}{urlencode(params)}"


class GenericOIDCClient:
    """Standard OpenID Connect provider with explicitly configured endpoints."""

    type_id = "generic"
    timeout: tuple[int, int] = (5, 20)

    def __init__(self, definition: ProviderDefinition) -> None:
        self.definition = self._with_defaults(definition)
        missing = [
            name
            for name in ("authorization_endpoint", "token_endpoint")
            if not getattr(self.definition, name)
        ]
        if missing:
            raise ConfigError(
                f"Provider {definition.id} is missing: {', '.join(missing)}"
            )
        self._jwks_client: jwt.PyJWKClient | None = None

    def _with_defaults(self, definition: ProviderDefinition) -> ProviderDefinition:
        return definition

    # ------------------------------------------------------------------ #
    # Identity                                                           #
    # ------------------------------------------------------------------ #
    @property
    def provider_id(self) -> str:
        return self.definition.id

    @property
    def label(self) -> str:
        return self.definition.display_label

    @property
    def supports_end_session(self) -> bool:
        return bool(self.definition.end_session_endpoint)

    # ------------------------------------------------------------------ #
    # Front channel                                                      #
    # ------------------------------------------------------------------ #
    def extra_authorize_params(self) -> dict[str, str]:
        return {}

    def authorize_url(self, scopes: Iterable[str], state: str) -> str:
        """Return the provider URL the browser is redirected to."""
        params: dict[str, str] = {
            "client_id": self.definition.client_id,
            "response_type": "code",
            "scope": " ".join(normalize_scopes(scopes)),
            "redirect_uri": self.definition.redirect_uri,
            "state": state,
        }
        params.update(self.extra_authorize_params())
        return _append_query(self.definition.authorization_endpoint, params)

    def end_session_url(
        self, id_token: str | None, post_logout_redirect_uri: str | None = None
    ) -> str | None:
        """Return the provider logout URL, or ``None`` if unsupported."""
        if not self.supports_end_session:
            return None
        params: dict[str, str] = {}
        if id_token:
            params["id_token_hint"] = id_token
        if post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = post_logout_redirect_uri
        if not params:
            return self.definition.end_session_endpoint
        return _append_query(self.definition.end_session_endpoint, params)

    # ------------------------------------------------------------------ #
    # Back channel                                                       #
    # ------------------------------------------------------------------ #
    def exchange(self, code: str) -> TokenSet:
        """Exchange an authorization *code* for tokens and claims.

        Raises
        ------
        ProviderError
            On transport failures, non-2xx answers, or a response lacking an
            id token or access token.
        """
        payload: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.definition.redirect_uri,
            "client_id": self.definition.client_id,
        }
        if self.definition.client_secret:
            payload["client_secret"] = self.definition.client_secret  # noqa: S105

        try:
            resp = requests.post(
                self.definition.token_endpoint,
                data=payload,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderError(
                provider_id=self.provider_id,
                error="transport_error",
                description=type(exc).__name__,
            ) from exc

        if not resp.ok:
            raise ProviderError(
                provider_id=self.provider_id,
                error=f"http_{resp.status_code}",
                description=self._error_detail(resp),
            )

        try:
            data = resp.json()
        except ValueError:
            raise ProviderError(
                provider_id=self.provider_id,
                error="invalid_response",
                description="token endpoint did not return JSON",
            ) from None

        id_token = data.get("id_token")
        access_token = data.get("access_token")
        if not id_token or not access_token:
            raise ProviderError(
                provider_id=self.provider_id,
                error="invalid_response",
                description="token response missing id_token or access_token",
            )

        claims = self.decode_id_token(id_token)
        userinfo = self.retrieve_userinfo(access_token)
        _LOG.info("Exchanged authorization code for provider=%s", self.provider_id)
        return TokenSet(
            id_token=id_token,
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            claims=claims,
            userinfo=userinfo,
        )

    @property
    def jwks_client(self) -> jwt.PyJWKClient:
        """Key-set client for ``jwks_uri``, built on first use and then kept."""
        if self._jwks_client is None:
            self._jwks_client = jwt.PyJWKClient(self.definition.jwks_uri, cache_keys=True)
        return self._jwks_client

    def decode_id_token(self, id_token: str) -> dict[str, Any]:
        """Decode the id token, verifying it when a JWKS URI is configured."""
        try:
            if self.definition.jwks_uri:
                signing_key = self.jwks_client.get_signing_key_from_jwt(id_token)
                claims = jwt.decode(
                    id_token,
                    signing_key.key,
                    algorithms=_ID_TOKEN_ALGORITHMS,
                    audience=self.definition.client_id,
                    issuer=self.definition.issuer or None,
                    options={"require": ["exp", "iat"]},
                    leeway=_JWT_LEEWAY_SECONDS,
                )
            else:
                claims = jwt.decode(id_token, options={"verify_signature": False})
        except (jwt.PyJWTError, ValueError, KeyError) as exc:
            raise ProviderError(
                provider_id=self.provider_id,
                error="invalid_id_token",
                description=type(exc).__name__,
            ) from exc
        return dict(claims)

    def retrieve_userinfo(self, access_token: str) -> dict[str, Any]:
        """Fetch userinfo claims; failures are logged and yield ``{}``."""
        endpoint = self.definition.userinfo_endpoint
        if not endpoint:
            return {}
        try:
            resp = requests.get(
                endpoint,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            _LOG.warning(
                "Could not retrieve userinfo from provider=%s: %s",
                self.provider_id,
                type(exc).__name__,
            )
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _error_detail(resp: requests.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(body, dict):
            return str(body.get("error_description") or body.get("error") or "")[:200]
        return ""


class GoogleClient(GenericOIDCClient):
    """Google accounts: fixed endpoints, no end-session support."""

    type_id = "google"

    _ENDPOINTS: Final[dict[str, str]] = {
        "authorization_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_endpoint": "https://oauth2.googleapis.com/token",
        "userinfo_endpoint": "https://openidconnect.googleapis.com/v1/userinfo",
        "jwks_uri": "https://www.googleapis.com/oauth2/v3/certs",
        "issuer": "https://accounts.google.com",
    }

    def _with_defaults(self, definition: ProviderDefinition) -> ProviderDefinition:
        overrides = {k: v for k, v in self._ENDPOINTS.items() if not getattr(definition, k)}
        return dataclasses.replace(
            definition,
            label=definition.label or "Google",
            end_session_endpoint="",
            **overrides,
        )


PROVIDER_TYPES: dict[str, type[GenericOIDCClient]] = {
    GenericOIDCClient.type_id: GenericOIDCClient,
    GoogleClient.type_id: GoogleClient,
}


class ProviderRegistry:
    """Enabled provider clients keyed by provider id."""

    def __init__(self, clients: Iterable[ProviderClient] = ()) -> None:
        self._clients: dict[str, ProviderClient] = {}
        for client in clients:
            self.register(client)

    @classmethod
    def from_definitions(cls, definitions: Iterable[ProviderDefinition]) -> "ProviderRegistry":
        registry = cls()
        for definition in definitions:
            if not definition.enabled:
                _LOG.debug("Skipping disabled provider=%s", definition.id)
                continue
            client_cls = PROVIDER_TYPES.get(definition.type)
            if client_cls is None:
                raise ConfigError(
                    f"Unknown provider type '{definition.type}' for provider {definition.id}"
                )
            registry.register(client_cls(definition))
        return registry

    def register(self, client: ProviderClient) -> None:
        self._clients[client.provider_id] = client

    def get(self, provider_id: str) -> ProviderClient | None:
        return self._clients.get(provider_id)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._clients

    def __iter__(self) -> Iterator[ProviderClient]:
        return iter(self._clients.values())

    def __len__(self) -> int:
        return len(self._clients)
