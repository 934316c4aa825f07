"""Utility functions for reading settings from the environment."""

import logging
import os
from typing import Final, Tuple

logger = logging.getLogger("oidc-connect.utils.environment")

_TRUTHY: Final[Tuple[str, ...]] = ("true", "1", "yes", "y", "on")


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def env_flag(name: str, default: bool = False) -> bool:
    """Return the boolean value of ``name``; unset falls back to *default*."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return _truthy(raw)


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s", name)
        return default


def env_list(name: str) -> list[str]:
    """Split a comma-separated variable, dropping blanks and duplicates."""
    seen: list[str] = []
    for item in (os.getenv(name) or "").split(","):
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


def env_mapping(name: str, default: dict[str, str] | None = None) -> dict[str, str]:
    """Parse ``key=value,key=value`` pairs.

    Entries without ``=`` or with an empty side are skipped with a warning.
    """
    raw = os.getenv(name)
    if raw is None:
        return dict(default or {})
    mapping: dict[str, str] = {}
    for pair in raw.split(","):
        if not pair.strip():
            continue
        key, sep, value = pair.partition("=")
        if not sep or not key.strip() or not value.strip():
            logger.warning("Ignoring malformed entry %r in %s", pair, name)
            continue
        mapping[key.strip()] = value.strip()
    return mapping


def provider_env_prefix(provider_id: str) -> str:
    """Return the variable prefix for a provider id (``OIDC_PROVIDER_<ID>_``)."""
    slug = "".join(ch if ch.isalnum() else "_" for ch in provider_id.upper())
    return f"OIDC_PROVIDER_{slug}_"
