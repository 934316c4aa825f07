"""Standard OpenID Connect claims and the scopes that release them."""

from __future__ import annotations

from typing import Final, Iterable, Mapping

# OpenID Connect Core 1.0, section 5.4
CLAIM_SCOPES: Final[dict[str, str]] = {
    "name": "profile",
    "family_name": "profile",
    "given_name": "profile",
    "middle_name": "profile",
    "nickname": "profile",
    "preferred_username": "profile",
    "profile": "profile",
    "picture": "profile",
    "website": "profile",
    "gender": "profile",
    "birthdate": "profile",
    "zoneinfo": "profile",
    "locale": "profile",
    "updated_at": "profile",
    "email": "email",
    "email_verified": "email",
    "address": "address",
    "phone_number": "phone",
    "phone_number_verified": "phone",
}

DEFAULT_SCOPES: Final[tuple[str, ...]] = ("openid", "email")


def normalize_scopes(scopes: Iterable[str] | None) -> list[str]:
    """De-duplicate *scopes*, keeping order, with ``openid`` always first."""
    result = ["openid"]
    for scope in scopes or ():
        for item in str(scope).split():
            if item not in result:
                result.append(item)
    return result


def get_scopes(
    mappings: Mapping[str, str] | None = None, extra: Iterable[str] = ()
) -> list[str]:
    """Return the scopes needed to receive the claims named in *mappings*.

    *mappings* maps local fields to claim names; unknown claims need no
    additional scope.
    """
    scopes = list(DEFAULT_SCOPES)
    for claim in (mappings or {}).values():
        scope = CLAIM_SCOPES.get(claim)
        if scope and scope not in scopes:
            scopes.append(scope)
    return normalize_scopes([*scopes, *extra])
