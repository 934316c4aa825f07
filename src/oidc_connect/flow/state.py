"""Anti-forgery ``state`` tokens for the authorization-code flow.

A token is a random, URL-safe string generated when the flow starts and
kept as the *pending* token of the browser session. The provider echoes it
back on the callback, where :meth:`StateToken.verify` consumes it:

* a token is accepted **at most once** – verification clears it whether or
  not the candidate matched;
* with no pending token every candidate is rejected, including the empty
  string;
* comparison is constant-time.

Starting a second flow in the same session replaces the pending token, so
only the most recent flow can complete.

Logging
-------
Token values are never logged; only the outcome of a verification is.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from typing import Final

from oidc_connect.flow.session import FlowSession

_LOG = logging.getLogger("oidc-connect.flow.state")

_TOKEN_BYTES: Final[int] = 32


class StateToken:
    """Create and verify single-use state tokens for one browser session."""

    def __init__(self, session: FlowSession, *, nbytes: int = _TOKEN_BYTES) -> None:
        if nbytes < 16:
            raise ValueError("state tokens need at least 16 random bytes")
        self.session = session
        self.nbytes = nbytes

    def generate(self) -> str:
        """Return a fresh token and store it as the pending one."""
        token = secrets.token_urlsafe(self.nbytes)
        self.session.save_state_token(token)
        return token

    def verify(self, candidate: str | None) -> bool:
        """Consume the pending token and report whether *candidate* matches it."""
        stored = self.session.retrieve_state_token(clear=True)
        if not stored or not candidate:
            _LOG.debug("State verification failed: %s", "no pending token" if not stored else "empty candidate")
            return False
        ok = hmac.compare_digest(stored.encode("utf-8"), candidate.encode("utf-8"))
        if not ok:
            _LOG.debug("State verification failed: mismatch")
        return ok
