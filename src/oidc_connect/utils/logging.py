"""Logging helpers shared by the flow core and the HTTP layer."""

from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def mask_sensitive(text: str | None, keep_chars: int = 4) -> str:
    """Mask *text* keeping only ``keep_chars`` characters at each end.

    Short values are masked entirely so that nothing useful leaks.
    """
    if not text:
        return ""
    if len(text) <= keep_chars * 2:
        return "*" * len(text)
    return text[:keep_chars] + "*" * (len(text) - keep_chars * 2) + text[-keep_chars:]


def setup_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Configure the ``oidc-connect`` logger hierarchy and return its root."""
    logger = logging.getLogger("oidc-connect")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)
    return logger
