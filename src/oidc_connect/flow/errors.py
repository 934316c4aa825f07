"""Exception types raised by the OpenID Connect flow core.

Only lightweight, **data-carrying** exceptions live here so that the web
layer can transform them into HTTP responses or user-facing messages.
None of them ever carries tokens, codes or client secrets.

Hierarchy::

    OpenIDConnectError
    +-- AccessDeniedError       state token missing or mismatched (403)
    +-- SequenceError           callback out of sequence (404)
    +-- UserDeclinedError       provider reported a consent/interaction error
    +-- ProviderError           any other provider or exchange failure
    +-- IdentityConflictError   subject claim missing or ambiguous
    +-- LinkConflictError       identity link constraint violated
    +-- AccountPolicyError      registration / e-mail / blocked-account rules
    +-- DuplicateUsernameError  conditional insert lost a username race
    +-- ConfigError             invalid configuration
"""

from __future__ import annotations


class OpenIDConnectError(RuntimeError):
    """Base class for all flow errors."""

    code: str = "openid_connect_error"

    def to_payload(self) -> dict[str, str]:
        """Return a JSON-serialisable payload **without secrets**."""
        return {"error": self.code, "message": str(self)}


class AccessDeniedError(OpenIDConnectError):
    """Raised when the state token cannot be verified."""

    code = "access_denied"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "State token verification failed.")


class SequenceError(OpenIDConnectError):
    """Raised when the callback is reached outside of a valid flow."""

    code = "not_found"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "No authorization flow in progress.")


class UserDeclinedError(OpenIDConnectError):
    """The user cancelled or did not grant the requested authorization."""

    code = "user_declined"

    def __init__(self, *, provider_id: str, error: str) -> None:
        super().__init__(f"Authorization declined at {provider_id}: {error}")
        self.provider_id = provider_id
        self.error = error

    def to_payload(self) -> dict[str, str]:
        return {
            "error": self.code,
            "provider": self.provider_id,
            "provider_error": self.error,
        }


class ProviderError(OpenIDConnectError):
    """Provider-reported error or failed token exchange."""

    code = "provider_error"

    def __init__(
        self,
        *,
        provider_id: str,
        error: str,
        description: str | None = None,
    ) -> None:
        detail = f"{error}: {description}" if description else error
        super().__init__(f"Provider {provider_id} failed: {detail}")
        self.provider_id = provider_id
        self.error = error
        self.description = description

    def to_payload(self) -> dict[str, str]:
        return {
            "error": self.code,
            "provider": self.provider_id,
            "provider_error": self.error,
        }


class IdentityConflictError(OpenIDConnectError):
    """No usable ``sub`` claim, or the id token and userinfo disagree."""

    code = "identity_conflict"

    def __init__(self, *, provider_id: str, message: str | None = None) -> None:
        super().__init__(message or f"No usable subject received from {provider_id}.")
        self.provider_id = provider_id


class LinkConflictError(OpenIDConnectError):
    """Writing the identity link would break the one-to-one constraints."""

    code = "link_conflict"

    def __init__(self, *, provider_id: str, reason: str) -> None:
        super().__init__(reason)
        self.provider_id = provider_id
        self.reason = reason


class AccountPolicyError(OpenIDConnectError):
    """Login refused by local account policy.

    ``str(exc)`` is safe to show to the end user.
    """

    code = "account_policy"


class DuplicateUsernameError(OpenIDConnectError):
    """Raised by account stores when a username is already taken."""

    code = "duplicate_username"

    def __init__(self, name: str) -> None:
        super().__init__(f"Username already taken: {name}")
        self.name = name


class ConfigError(OpenIDConnectError):
    """Raised for missing or invalid configuration."""

    code = "config_error"
