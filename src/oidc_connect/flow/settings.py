"""Settings and provider definitions for the OpenID Connect flow.

Everything is read from the environment by :meth:`OpenIDConnectSettings.from_env`.
Global switches use the ``OIDC_`` prefix; each provider listed in
``OIDC_PROVIDERS`` is configured with ``OIDC_PROVIDER_<ID>_*`` variables::

    OIDC_PROVIDERS=keycloak,google
    OIDC_PROVIDER_KEYCLOAK_TYPE=generic
    OIDC_PROVIDER_KEYCLOAK_CLIENT_ID=web
    OIDC_PROVIDER_KEYCLOAK_AUTHORIZATION_ENDPOINT=https://sso.example.com/auth
    ...

Invalid values raise :class:`~oidc_connect.flow.errors.ConfigError` at
load time rather than on the first login attempt.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from oidc_connect.flow.errors import ConfigError
from oidc_connect.utils.environment import (
    env_flag,
    env_int,
    env_list,
    env_mapping,
    env_str,
    provider_env_prefix,
)

logger = logging.getLogger("oidc-connect.flow.settings")


class LoginDisplay(str, Enum):
    """Where the provider buttons go on the host login form."""

    HIDDEN = "hidden"
    ABOVE = "above"
    BELOW = "below"
    REPLACE = "replace"


class RegistrationPolicy(str, Enum):
    """Host policy for creating accounts."""

    ADMIN_ONLY = "admin_only"
    VISITORS = "visitors"
    VISITORS_ADMIN_APPROVAL = "visitors_admin_approval"


def _enum(enum_cls, raw: str, name: str):  # noqa: ANN001, ANN202
    try:
        return enum_cls(raw.strip().lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ConfigError(f"{name} must be one of: {allowed}") from None


@dataclass(frozen=True)
class ProviderDefinition:
    """One configured identity provider."""

    id: str
    client_id: str
    type: str = "generic"
    label: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    userinfo_endpoint: str = ""
    end_session_endpoint: str = ""
    jwks_uri: str = ""
    issuer: str = ""
    enabled: bool = True

    @property
    def display_label(self) -> str:
        return self.label or self.id.replace("_", " ").title()

    @classmethod
    def from_env(cls, provider_id: str) -> "ProviderDefinition":
        prefix = provider_env_prefix(provider_id)
        client_id = env_str(prefix + "CLIENT_ID")
        if not client_id:
            raise ConfigError(f"{prefix}CLIENT_ID is required for provider {provider_id}")
        return cls(
            id=provider_id,
            client_id=client_id,
            type=env_str(prefix + "TYPE", "generic").lower(),
            label=env_str(prefix + "LABEL"),
            client_secret=env_str(prefix + "CLIENT_SECRET"),
            redirect_uri=env_str(prefix + "REDIRECT_URI"),
            authorization_endpoint=env_str(prefix + "AUTHORIZATION_ENDPOINT"),
            token_endpoint=env_str(prefix + "TOKEN_ENDPOINT"),
            userinfo_endpoint=env_str(prefix + "USERINFO_ENDPOINT"),
            end_session_endpoint=env_str(prefix + "END_SESSION_ENDPOINT"),
            jwks_uri=env_str(prefix + "JWKS_URI"),
            issuer=env_str(prefix + "ISSUER"),
            enabled=env_flag(prefix + "ENABLED", True),
        )


@dataclass(frozen=True)
class OpenIDConnectSettings:
    """Global behaviour of the login and connect flows."""

    always_save_userinfo: bool = False
    connect_existing_users: bool = False
    override_registration_settings: bool = False
    user_login_display: LoginDisplay = LoginDisplay.BELOW
    redirect_login: str = ""
    redirect_logout: str = ""
    userinfo_mappings: dict[str, str] = field(default_factory=lambda: {"timezone": "zoneinfo"})
    user_register: RegistrationPolicy = RegistrationPolicy.VISITORS_ADMIN_APPROVAL
    login_path: str = "user/login"
    storage_dir: str | None = None
    session_backend: str = "memory"
    flow_ttl_seconds: int = 900
    providers: tuple[ProviderDefinition, ...] = ()

    @property
    def registration_policy(self) -> RegistrationPolicy:
        """Host policy after applying the federated-login override."""
        if (
            self.user_register is RegistrationPolicy.ADMIN_ONLY
            and self.override_registration_settings
        ):
            return RegistrationPolicy.VISITORS
        return self.user_register

    @property
    def post_login_path(self) -> str:
        return self.redirect_login or "user"

    def provider(self, provider_id: str) -> ProviderDefinition | None:
        return next((p for p in self.providers if p.id == provider_id), None)

    @classmethod
    def from_env(cls) -> "OpenIDConnectSettings":
        session_backend = env_str("OIDC_SESSION_BACKEND", "memory").lower()
        if session_backend not in ("memory", "disk"):
            raise ConfigError("OIDC_SESSION_BACKEND must be 'memory' or 'disk'")
        providers = tuple(ProviderDefinition.from_env(pid) for pid in env_list("OIDC_PROVIDERS"))
        settings = cls(
            always_save_userinfo=env_flag("OIDC_ALWAYS_SAVE_USERINFO"),
            connect_existing_users=env_flag("OIDC_CONNECT_EXISTING_USERS"),
            override_registration_settings=env_flag("OIDC_OVERRIDE_REGISTRATION_SETTINGS"),
            user_login_display=_enum(
                LoginDisplay, env_str("OIDC_USER_LOGIN_DISPLAY", "below"), "OIDC_USER_LOGIN_DISPLAY"
            ),
            redirect_login=env_str("OIDC_REDIRECT_LOGIN"),
            redirect_logout=env_str("OIDC_REDIRECT_LOGOUT"),
            userinfo_mappings=env_mapping("OIDC_USERINFO_MAPPINGS", {"timezone": "zoneinfo"}),
            user_register=_enum(
                RegistrationPolicy,
                env_str("OIDC_USER_REGISTER", "visitors_admin_approval"),
                "OIDC_USER_REGISTER",
            ),
            login_path=env_str("OIDC_LOGIN_PATH", "user/login"),
            storage_dir=os.getenv("OIDC_STORAGE_DIR") or None,
            session_backend=session_backend,
            flow_ttl_seconds=env_int("OIDC_FLOW_TTL_SECONDS", 900),
            providers=providers,
        )
        logger.info(
            "Loaded OpenID Connect settings: providers=%s register=%s display=%s",
            [p.id for p in providers],
            settings.registration_policy.value,
            settings.user_login_display.value,
        )
        return settings
