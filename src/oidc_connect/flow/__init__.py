"""OpenID Connect flow core package.

This namespace hosts the **HTTP-agnostic** building blocks of the login and
account-connect flows.

Sub-modules
-----------
clock
    Test-friendly time abstraction.
errors
    Data-carrying exception types.
models
    Dataclasses for flow context, tokens, links, accounts and outcomes.
store
    Account and identity-link storage (memory and disk).
session
    Browser-session storage and the :class:`FlowSession` facade.
state
    Single-use anti-forgery ``state`` tokens.
claims
    Standard claims and the scopes that release them.
identity
    Subject extraction and link resolution.
settings
    Global settings and provider definitions from the environment.
accounts
    Account creation, linking and claim mapping.
providers
    Provider clients and their registry.
service
    :class:`AuthorizationFlowController`, the flow state machine.
log_utils
    Structured logging helpers (thin wrapper around :pymod:`logging`).

All public objects are re-exported here for convenience.
"""

from __future__ import annotations

from .clock import Clock, default_clock  # noqa: F401
from .errors import (  # noqa: F401
    AccessDeniedError,
    AccountPolicyError,
    ConfigError,
    DuplicateUsernameError,
    IdentityConflictError,
    LinkConflictError,
    OpenIDConnectError,
    ProviderError,
    SequenceError,
    UserDeclinedError,
)
from .models import (  # noqa: F401
    Account,
    FlowContext,
    FlowOutcome,
    FlowState,
    IdentityLink,
    LogoutOutcome,
    Message,
    MessageLevel,
    Operation,
    TokenSet,
)
from .store import AccountStore, DiskUserStore, LinkStore, MemoryUserStore  # noqa: F401
from .session import (  # noqa: F401
    DiskSessionStore,
    FlowSession,
    MemorySessionStore,
    SessionStore,
    new_session_key,
)
from .state import StateToken  # noqa: F401
from .claims import get_scopes  # noqa: F401
from .identity import IdentityResolver, extract_subject  # noqa: F401
from .settings import (  # noqa: F401
    LoginDisplay,
    OpenIDConnectSettings,
    ProviderDefinition,
    RegistrationPolicy,
)
from .accounts import AccountLinker  # noqa: F401
from .providers import (  # noqa: F401
    GenericOIDCClient,
    GoogleClient,
    ProviderClient,
    ProviderRegistry,
)
from .service import AuthorizationFlowController  # noqa: F401
from .log_utils import get_flow_logger  # noqa: F401

__all__ = [
    # clock
    "Clock",
    "default_clock",
    # errors
    "OpenIDConnectError",
    "AccessDeniedError",
    "SequenceError",
    "UserDeclinedError",
    "ProviderError",
    "IdentityConflictError",
    "LinkConflictError",
    "AccountPolicyError",
    "DuplicateUsernameError",
    "ConfigError",
    # models
    "Account",
    "FlowContext",
    "FlowOutcome",
    "FlowState",
    "IdentityLink",
    "LogoutOutcome",
    "Message",
    "MessageLevel",
    "Operation",
    "TokenSet",
    # storage
    "AccountStore",
    "LinkStore",
    "MemoryUserStore",
    "DiskUserStore",
    "SessionStore",
    "MemorySessionStore",
    "DiskSessionStore",
    "FlowSession",
    "new_session_key",
    # flow primitives
    "StateToken",
    "get_scopes",
    "IdentityResolver",
    "extract_subject",
    "AccountLinker",
    # configuration
    "LoginDisplay",
    "OpenIDConnectSettings",
    "ProviderDefinition",
    "RegistrationPolicy",
    # providers
    "ProviderClient",
    "GenericOIDCClient",
    "GoogleClient",
    "ProviderRegistry",
    # controller
    "AuthorizationFlowController",
    # logging helpers
    "get_flow_logger",
]
