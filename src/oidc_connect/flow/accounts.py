"""Account creation and identity linking from provider claims.

:class:`AccountLinker` owns every write the flow makes to local storage:

* creating an account for a first-time federated login, with a username
  derived from the claims and made unique by suffixing (``_1``, ``_2``…);
* linking a ``(provider, subject)`` pair to an existing account;
* copying mapped claims into profile fields, never touching protected
  attributes;
* removing links.

Username uniqueness is enforced by the store's conditional insert, not by
a lock: a name that was free when checked can still be taken a moment
later, in which case creation moves on to the next suffix.
"""

from __future__ import annotations

import logging
import re
from hashlib import sha256
from typing import Any, Final, Mapping

from oidc_connect.flow.clock import Clock, default_clock
from oidc_connect.flow.errors import (
    AccountPolicyError,
    DuplicateUsernameError,
    LinkConflictError,
)
from oidc_connect.flow.models import Account, IdentityLink
from oidc_connect.flow.settings import OpenIDConnectSettings, RegistrationPolicy
from oidc_connect.flow.store import AccountStore, LinkStore

_LOG = logging.getLogger("oidc-connect.flow.accounts")

# Account attributes claims may never overwrite
USER_PROPERTIES_IGNORE: Final[tuple[str, ...]] = (
    "uid",
    "uuid",
    "langcode",
    "preferred_langcode",
    "preferred_admin_langcode",
    "name",
    "pass",
    "mail",
    "status",
    "created",
    "changed",
    "access",
    "login",
    "init",
    "roles",
    "default_langcode",
)

# Tried in order; the first non-empty claim wins
USERNAME_CLAIMS: Final[tuple[str, ...]] = ("name", "preferred_username")

_MAX_SUFFIX: Final[int] = 100
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def fallback_username(provider_id: str, subject: str) -> str:
    """Deterministic username used when the claims carry no usable name."""
    return f"oidc_{provider_id}_{sha256(subject.encode('utf-8')).hexdigest()[:32]}"


def derive_username(provider_id: str, subject: str, claims: Mapping[str, Any]) -> str:
    """Return the preferred username candidate, before collision handling."""
    for claim in USERNAME_CLAIMS:
        value = claims.get(claim)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return fallback_username(provider_id, subject)


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(_EMAIL_RE.match(value.strip()))


class AccountLinker:
    """Create, link and update local accounts from provider claims."""

    def __init__(
        self,
        accounts: AccountStore,
        links: LinkStore,
        settings: OpenIDConnectSettings,
        *,
        clock: Clock = default_clock,
    ) -> None:
        self.accounts = accounts
        self.links = links
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------------ #
    # Creation                                                           #
    # ------------------------------------------------------------------ #
    def registration_status(self) -> bool:
        """Return whether new accounts start enabled.

        Raises :class:`AccountPolicyError` when the host only lets
        administrators create accounts.
        """
        policy = self.settings.registration_policy
        if policy is RegistrationPolicy.ADMIN_ONLY:
            raise AccountPolicyError("Only administrators can register new accounts.")
        return policy is RegistrationPolicy.VISITORS

    def create_account(
        self,
        subject: str,
        claims: Mapping[str, Any],
        provider_id: str,
        enabled: bool | None = None,
    ) -> Account:
        """Create a local account for a first-time federated login.

        *enabled* defaults to what the registration policy allows. The
        account is not linked here; see :meth:`link`.
        """
        if enabled is None:
            enabled = self.registration_status()
        mail = claims.get("email")
        mail = mail.strip() if isinstance(mail, str) else None

        base = derive_username(provider_id, subject, claims)
        for i in range(_MAX_SUFFIX + 1):
            name = base if i == 0 else f"{base}_{i}"
            if self.accounts.find_by_name(name) is not None:
                continue
            try:
                account = self.accounts.create(
                    name=name, mail=mail, init=mail, status=enabled
                )
            except DuplicateUsernameError:
                # Lost the race for this name since the check above
                _LOG.debug("Username taken concurrently, trying next suffix")
                continue
            _LOG.info(
                "Created account uid=%s for provider=%s (enabled=%s)",
                account.uid,
                provider_id,
                enabled,
            )
            self.save_userinfo(account, claims, is_new=True)
            return account
        raise AccountPolicyError("Could not find a free username for the new account.")

    # ------------------------------------------------------------------ #
    # Linking                                                            #
    # ------------------------------------------------------------------ #
    def link(self, account: Account, provider_id: str, subject: str) -> IdentityLink:
        """Write the identity link; raises :class:`LinkConflictError`."""
        link = IdentityLink(
            user_id=account.uid,
            provider_id=provider_id,
            subject=subject,
            created_at=int(self.clock()),
        )
        self.links.create_link(link)
        _LOG.info("Linked uid=%s to provider=%s", account.uid, provider_id)
        return link

    def connect_existing(
        self,
        account: Account,
        provider_id: str,
        subject: str,
        claims: Mapping[str, Any] | None = None,
    ) -> IdentityLink:
        """Link *account* to ``(provider_id, subject)``.

        Re-connecting an identical link succeeds without writing. Raises
        :class:`LinkConflictError` when the subject belongs to another user
        or the account is already linked to a different subject at this
        provider.
        """
        owner = self.links.find_user_id(provider_id, subject)
        if owner is not None and owner != account.uid:
            raise LinkConflictError(
                provider_id=provider_id,
                reason="subject is linked to another account",
            )
        if owner is None:
            existing = self.connected_accounts(account.uid).get(provider_id)
            if existing is not None:
                raise LinkConflictError(
                    provider_id=provider_id,
                    reason="account is linked to another subject",
                )
            link = self.link(account, provider_id, subject)
        else:
            link = IdentityLink(user_id=account.uid, provider_id=provider_id, subject=subject)

        if claims and self.settings.always_save_userinfo:
            self.save_userinfo(account, claims)
        return link

    def disconnect(self, user_id: str, provider_id: str) -> bool:
        """Remove the link; returns whether one existed."""
        removed = self.links.delete_link(user_id, provider_id)
        if removed:
            _LOG.info("Disconnected uid=%s from provider=%s", user_id, provider_id)
        return removed

    def connected_accounts(self, user_id: str) -> dict[str, str]:
        """Return ``{provider_id: subject}`` for *user_id*."""
        return {link.provider_id: link.subject for link in self.links.links_for_user(user_id)}

    def has_set_password_access(self, user_id: str, has_permission: bool = False) -> bool:
        """Whether the user may set a local password.

        Linked users need the dedicated permission; unlinked users always may.
        """
        if has_permission:
            return True
        return not self.links.links_for_user(user_id)

    # ------------------------------------------------------------------ #
    # Claims                                                             #
    # ------------------------------------------------------------------ #
    def save_userinfo(
        self, account: Account, claims: Mapping[str, Any], *, is_new: bool = False
    ) -> list[str]:
        """Copy mapped claims into profile fields and persist the account.

        Returns the names of the fields that changed.
        """
        changed: list[str] = []
        for field_name, claim in self.settings.userinfo_mappings.items():
            if field_name in USER_PROPERTIES_IGNORE:
                continue
            if claim not in claims or claims[claim] in (None, ""):
                continue
            value = claims[claim]
            if account.fields.get(field_name) != value:
                account.fields[field_name] = value
                changed.append(field_name)
        if changed or is_new:
            self.accounts.save(account)
        if changed:
            _LOG.debug("Updated fields %s for uid=%s", changed, account.uid)
        return changed
