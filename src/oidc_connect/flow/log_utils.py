"""Structured logging helpers for the flow core.

The adapter restricts **which** contextual attributes are attached to log
records so that secrets cannot leak through them. Only these fields are
injected:

- ``provider``        – provider id (``google``, ``keycloak``…)
- ``operation``       – ``login`` or ``connect``
- ``session``         – browser session key, first 6 characters only
- ``correlation_id``  – request correlation id set by the HTTP layer

Usage
-----
>>> from oidc_connect.flow.log_utils import get_flow_logger
>>> log = get_flow_logger(provider="google", operation="login")
>>> log.info("Starting authorization")
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping


class _FlowLoggerAdapter(logging.LoggerAdapter):
    """Inject whitelisted flow context into log records."""

    extra_keys = ("provider", "operation", "session", "correlation_id")

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        extra_clean: MutableMapping[str, Any] = {}
        for k in self.extra_keys:
            if k == "session" and extra and extra.get("session"):
                # keep only the first 6 characters of the session key
                extra_clean[k] = str(extra["session"])[:6]
            elif extra and k in extra and extra[k] is not None:
                extra_clean[k] = extra[k]
        super().__init__(logger, extra_clean)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        if "extra" not in kwargs or kwargs["extra"] is None:
            kwargs["extra"] = {}
        # merge but do not overwrite call-site provided extras
        for k, v in self.extra.items():
            kwargs["extra"].setdefault(k, v)
        return msg, kwargs


def get_flow_logger(
    *,
    base_logger_name: str = "oidc-connect.flow",
    provider: str | None = None,
    operation: str | None = None,
    session: str | None = None,
    correlation_id: str | None = None,
) -> logging.LoggerAdapter:
    """Return a LoggerAdapter pre-filled with flow context."""
    logger = logging.getLogger(base_logger_name)
    return _FlowLoggerAdapter(
        logger,
        {
            "provider": provider,
            "operation": operation,
            "session": session,
            "correlation_id": correlation_id,
        },
    )
