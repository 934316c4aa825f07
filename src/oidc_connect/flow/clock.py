"""Clock abstraction for testable time handling in the flow core.

All time-based decisions inside :mod:`oidc_connect.flow` (flow context
expiry, link timestamps) depend on an injected ``Clock`` instead of calling
``time.time()`` directly.

Example
-------
>>> from oidc_connect.flow.clock import default_clock
>>> isinstance(default_clock(), float)
True
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable protocol returning *seconds* since the UNIX epoch."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    """Default implementation that delegates to ``time.time()``."""
    return time.time()
