"""Subject extraction and identity-link resolution."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from oidc_connect.flow.models import Account
from oidc_connect.flow.store import AccountStore, LinkStore

_LOG = logging.getLogger("oidc-connect.flow.identity")


def _sub(claims: Mapping[str, Any] | None) -> str | None:
    if not claims:
        return None
    value = claims.get("sub")
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def extract_subject(
    token_claims: Mapping[str, Any] | None,
    userinfo_claims: Mapping[str, Any] | None,
) -> str | None:
    """Return the provider's subject identifier, or ``None``.

    The id-token ``sub`` and the userinfo ``sub`` must agree when both are
    present; a disagreement fails closed.
    """
    token_sub = _sub(token_claims)
    userinfo_sub = _sub(userinfo_claims)
    if token_sub is None:
        return userinfo_sub
    if userinfo_sub is not None and userinfo_sub != token_sub:
        return None
    return token_sub


class IdentityResolver:
    """Map ``(provider, subject)`` pairs to local accounts."""

    def __init__(self, accounts: AccountStore, links: LinkStore) -> None:
        self.accounts = accounts
        self.links = links

    def extract_subject(
        self,
        token_claims: Mapping[str, Any] | None,
        userinfo_claims: Mapping[str, Any] | None,
    ) -> str | None:
        return extract_subject(token_claims, userinfo_claims)

    def resolve(self, provider_id: str, subject: str) -> Account | None:
        """Return the linked account, or ``None`` when there is none.

        A link whose account no longer exists is removed so that the
        subject can be linked again.
        """
        user_id = self.links.find_user_id(provider_id, subject)
        if user_id is None:
            return None
        account = self.accounts.get(user_id)
        if account is None:
            _LOG.warning(
                "Purging link for provider=%s to missing account uid=%s", provider_id, user_id
            )
            self.links.delete_link(user_id, provider_id)
        return account
