"""Typed records used by the OpenID Connect flow."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from oidc_connect.flow.clock import Clock, default_clock


class Operation(str, Enum):
    """What the callback should do once the provider hands back a code."""

    LOGIN = "login"
    CONNECT = "connect"


class FlowState(str, Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETED = "completed"
    REJECTED = "rejected"


class MessageLevel(str, Enum):
    STATUS = "status"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Message:
    """A user-visible message queued for the next page view."""

    level: MessageLevel
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"level": self.level.value, "text": self.text}


@dataclass(frozen=True, slots=True)
class FlowContext:
    """Ephemeral state describing what the pending callback should do."""

    operation: Operation
    provider_id: str
    acting_user_id: str | None = None
    destination: str | None = None
    locale: str | None = None
    created_at: int = field(default_factory=lambda: int(default_clock()))
    # Abandoned flows become unusable after 15 minutes by default
    ttl_seconds: int = 900

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        """Return *True* if the context exceeded its TTL."""
        return (clock() - self.created_at) > self.ttl_seconds


@dataclass(frozen=True, slots=True)
class TokenSet:
    """Result of one authorization-code exchange."""

    id_token: str
    access_token: str
    claims: dict[str, Any] = field(default_factory=dict)
    userinfo: dict[str, Any] = field(default_factory=dict)
    refresh_token: str | None = None

    @property
    def merged_claims(self) -> dict[str, Any]:
        """Id-token claims overlaid with userinfo claims."""
        return {**self.claims, **self.userinfo}


@dataclass(frozen=True, slots=True)
class IdentityLink:
    """Durable association between a local account and a provider subject."""

    user_id: str
    provider_id: str
    subject: str
    created_at: int = field(default_factory=lambda: int(default_clock()))


@dataclass(slots=True)
class Account:
    """Local user account as seen by the flow core.

    ``fields`` holds profile attributes that claim mappings may write to;
    the named attributes are protected and never written from claims.
    """

    uid: str
    name: str
    mail: str | None = None
    init: str | None = None
    status: bool = True
    langcode: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    created: int = field(default_factory=lambda: int(default_clock()))
    changed: int = field(default_factory=lambda: int(default_clock()))

    @property
    def is_blocked(self) -> bool:
        return not self.status


@dataclass(slots=True)
class FlowOutcome:
    """Terminal result of a callback, ready to be turned into a redirect."""

    state: FlowState
    operation: Operation | None
    destination: str
    locale: str | None = None
    user_id: str | None = None
    messages: list[Message] = field(default_factory=list)
    # set when login moved the browser session to a new key
    session_key: str | None = None

    @property
    def redirect_path(self) -> str:
        """Internal path to redirect to (always rooted, never external)."""
        return "/" + self.destination.lstrip("/")

    def add(self, level: MessageLevel, text: str) -> None:
        self.messages.append(Message(level, text))


@dataclass(slots=True)
class LogoutOutcome:
    """Where to send the browser after a local logout."""

    redirect_url: str
    end_session_urls: list[str] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
