"""AuthorizationFlowController – the login / connect state machine.

HTTP handlers in :mod:`oidc_connect.servers.auth` call the methods below
with the browser session key and the request parameters; nothing in here
knows about requests or responses.

A flow moves ``IDLE -> AWAITING_CALLBACK`` in :meth:`initiate` (by virtue
of the external redirect) and ends in ``COMPLETED`` or ``REJECTED`` in
:meth:`callback`. The callback composes three independent steps, in this
order:

1. state-token verification (:class:`~oidc_connect.flow.state.StateToken`),
2. read-and-clear of the flow context (:class:`~oidc_connect.flow.session.FlowSession`),
3. code exchange (:class:`~oidc_connect.flow.providers.ProviderClient`).

Only :class:`AccessDeniedError` and :class:`SequenceError` escape
:meth:`callback`; every other failure becomes a rejected
:class:`FlowOutcome` carrying a user-visible message. Nothing is retried;
a retry is always a fresh :meth:`initiate`.
"""

from __future__ import annotations

import logging
from typing import Any, Final, Iterable

from oidc_connect.flow.accounts import AccountLinker, is_valid_email
from oidc_connect.flow.claims import get_scopes
from oidc_connect.flow.clock import Clock, default_clock
from oidc_connect.flow.errors import (
    AccessDeniedError,
    AccountPolicyError,
    IdentityConflictError,
    LinkConflictError,
    ProviderError,
    SequenceError,
    UserDeclinedError,
)
from oidc_connect.flow.identity import IdentityResolver
from oidc_connect.flow.log_utils import get_flow_logger
from oidc_connect.flow.models import (
    Account,
    FlowContext,
    FlowOutcome,
    FlowState,
    LogoutOutcome,
    Message,
    MessageLevel,
    Operation,
    TokenSet,
)
from oidc_connect.flow.providers import ProviderClient, ProviderRegistry
from oidc_connect.flow.session import FlowSession, SessionStore
from oidc_connect.flow.settings import OpenIDConnectSettings
from oidc_connect.flow.state import StateToken
from oidc_connect.flow.store import AccountStore, LinkStore
from oidc_connect.utils.logging import mask_sensitive

_LOGGER_NAME: Final[str] = "oidc-connect.flow.service"
_LOG = logging.getLogger(_LOGGER_NAME)

# Provider errors that mean the user backed out rather than that something broke
USER_DECLINED_ERRORS: Final[frozenset[str]] = frozenset(
    {
        "interaction_required",
        "login_required",
        "account_selection_required",
        "consent_required",
    }
)

PENDING_APPROVAL_MESSAGE: Final[str] = (
    "Thank you for applying for an account. Your account is currently "
    "pending approval by the site administrator."
)


def classify_provider_error(
    provider_id: str, error: str, description: str | None = None
) -> UserDeclinedError | ProviderError:
    """Map an ``error`` returned on the callback to the matching exception."""
    if error in USER_DECLINED_ERRORS:
        return UserDeclinedError(provider_id=provider_id, error=error)
    return ProviderError(provider_id=provider_id, error=error, description=description)


class AuthorizationFlowController:
    """Orchestrate authorize redirects, callbacks and logout for all providers."""

    def __init__(
        self,
        settings: OpenIDConnectSettings,
        providers: ProviderRegistry,
        accounts: AccountStore,
        links: LinkStore,
        session_store: SessionStore,
        *,
        clock: Clock = default_clock,
    ) -> None:
        self.settings = settings
        self.providers = providers
        self.accounts = accounts
        self.links = links
        self.session_store = session_store
        self.clock = clock
        self.resolver = IdentityResolver(accounts, links)
        self.linker = AccountLinker(accounts, links, settings, clock=clock)

    # ------------------------------------------------------------------ #
    # Helpers                                                            #
    # ------------------------------------------------------------------ #
    def session(self, session_key: str) -> FlowSession:
        return FlowSession(
            self.session_store,
            session_key,
            login_path=self.settings.login_path,
            redirect_login=self.settings.redirect_login or None,
            clock=self.clock,
        )

    def client(self, provider_id: str) -> ProviderClient:
        """Return the enabled client for *provider_id* or raise :class:`SequenceError`."""
        client = self.providers.get(provider_id)
        if client is None:
            raise SequenceError(f"Unknown provider: {provider_id}")
        return client

    # ------------------------------------------------------------------ #
    # Initiate                                                           #
    # ------------------------------------------------------------------ #
    def initiate(
        self,
        session_key: str,
        provider_id: str,
        operation: Operation | str = Operation.LOGIN,
        *,
        scopes: Iterable[str] | None = None,
        acting_user_id: str | None = None,
        destination: str = "/",
        locale: str | None = None,
        correlation_id: str | None = None,
    ) -> str:
        """Record the flow context and return the provider authorize URL.

        Starting a new flow replaces any pending one in the same session.
        """
        client = self.client(provider_id)
        op = Operation(operation)
        log = get_flow_logger(
            base_logger_name=_LOGGER_NAME,
            provider=provider_id,
            operation=op.value,
            session=session_key,
            correlation_id=correlation_id,
        )
        session = self.session(session_key)
        session.save_op(
            op,
            acting_user_id if op is Operation.CONNECT else None,
            provider_id=provider_id,
            ttl_seconds=self.settings.flow_ttl_seconds,
        )
        session.save_destination(destination, locale)
        token = StateToken(session).generate()
        requested = get_scopes(self.settings.userinfo_mappings) if scopes is None else scopes
        url = client.authorize_url(requested, token)
        log.info("Redirecting to provider for authorization")
        return url

    # ------------------------------------------------------------------ #
    # Callback                                                           #
    # ------------------------------------------------------------------ #
    def callback(
        self,
        session_key: str,
        provider_id: str,
        *,
        state: str | None,
        code: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
        current_user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> FlowOutcome:
        """Complete the pending flow for *provider_id*.

        Raises
        ------
        AccessDeniedError
            The ``state`` value does not match the pending token. Nothing
            else has been read or changed.
        SequenceError
            No (unexpired) flow context for this provider, or neither
            ``code`` nor ``error`` was supplied.
        """
        session = self.session(session_key)
        log = get_flow_logger(
            base_logger_name=_LOGGER_NAME,
            provider=provider_id,
            session=session_key,
            correlation_id=correlation_id,
        )

        if not StateToken(session).verify(state):
            log.warning("Rejected callback: state token verification failed")
            raise AccessDeniedError()

        context = session.consume_context()
        if context is None:
            log.info("Rejected callback: no pending flow context")
            raise SequenceError()
        if context.provider_id != provider_id:
            log.warning("Rejected callback: flow was started for provider=%s", context.provider_id)
            raise SequenceError()
        client = self.client(provider_id)

        log = get_flow_logger(
            base_logger_name=_LOGGER_NAME,
            provider=provider_id,
            operation=context.operation.value,
            session=session_key,
            correlation_id=correlation_id,
        )
        outcome = FlowOutcome(
            state=FlowState.REJECTED,
            operation=context.operation,
            destination=(
                context.destination
                if context.destination is not None
                else self.settings.post_login_path
            ),
            locale=context.locale,
        )

        if error:
            self._provider_error(client, error, error_description, outcome, log)
        else:
            if not code:
                log.info("Rejected callback: neither code nor error supplied")
                raise SequenceError()
            tokens = self._exchange(client, code, outcome, log)
            if tokens is not None:
                if context.operation is Operation.LOGIN:
                    self._complete_login(session, client, tokens, outcome, log)
                else:
                    self._complete_connect(client, tokens, context, current_user_id, outcome, log)

        session.add_messages(outcome.messages)
        log.info("Authorization flow finished: %s", outcome.state.value)
        return outcome

    def _provider_error(
        self,
        client: ProviderClient,
        error: str,
        description: str | None,
        outcome: FlowOutcome,
        log: logging.LoggerAdapter,
    ) -> None:
        exc = classify_provider_error(client.provider_id, error, description)
        if isinstance(exc, UserDeclinedError):
            log.debug("%s", exc)
            outcome.add(
                MessageLevel.WARNING, f"Logging in with {client.label} has been canceled."
            )
            return
        log.error("Authorization failed at provider: %s", exc)
        outcome.add(MessageLevel.ERROR, f"Could not authenticate with {client.label}.")

    def _exchange(
        self,
        client: ProviderClient,
        code: str,
        outcome: FlowOutcome,
        log: logging.LoggerAdapter,
    ) -> TokenSet | None:
        try:
            return client.exchange(code)
        except ProviderError as exc:
            log.error("Token exchange failed: %s", exc)
            outcome.add(
                MessageLevel.ERROR,
                f"Failed to get authentication tokens for {client.label}. "
                "Check logs for further details.",
            )
            return None

    # ----- login ------------------------------------------------------- #
    def _complete_login(
        self,
        session: FlowSession,
        client: ProviderClient,
        tokens: TokenSet,
        outcome: FlowOutcome,
        log: logging.LoggerAdapter,
    ) -> None:
        try:
            account, is_new = self._login_account(client.provider_id, tokens)
        except (IdentityConflictError, LinkConflictError) as exc:
            log.error("Login failed: %s", exc)
            outcome.add(
                MessageLevel.ERROR,
                f"Logging in with {client.label} could not be completed due to an error.",
            )
            return
        except AccountPolicyError as exc:
            log.info("Login refused by account policy: %s", exc.code)
            outcome.add(MessageLevel.ERROR, str(exc))
            outcome.add(
                MessageLevel.ERROR,
                f"Logging in with {client.label} could not be completed due to an error.",
            )
            return

        if account.is_blocked:
            if is_new:
                outcome.add(MessageLevel.WARNING, PENDING_APPROVAL_MESSAGE)
            else:
                log.info("Login refused: account uid=%s is blocked", account.uid)
                outcome.add(MessageLevel.ERROR, "The user has been blocked.")
            return

        outcome.session_key = session.login(account.uid)
        session.save_id_token(tokens.id_token, client.provider_id)
        session.save_access_token(tokens.access_token)
        outcome.state = FlowState.COMPLETED
        outcome.user_id = account.uid
        log.info("Logged in uid=%s", account.uid)

    def _login_account(self, provider_id: str, tokens: TokenSet) -> tuple[Account, bool]:
        """Return ``(account, is_new)`` for the subject in *tokens*."""
        subject = self.resolver.extract_subject(tokens.claims, tokens.userinfo)
        if subject is None:
            raise IdentityConflictError(provider_id=provider_id)
        claims = tokens.merged_claims

        account = self.resolver.resolve(provider_id, subject)
        if account is not None:
            if self.settings.always_save_userinfo:
                self.linker.save_userinfo(account, claims)
            return account, False

        email = claims.get("email")
        if not is_valid_email(email):
            raise AccountPolicyError(f"The e-mail address is not valid: {email}")
        email = email.strip()

        existing = self.accounts.find_by_mail(email)
        if existing is not None:
            if not self.settings.connect_existing_users:
                raise AccountPolicyError(f"The e-mail address is already taken: {email}")
            self.linker.connect_existing(existing, provider_id, subject)
            self.linker.save_userinfo(existing, claims)
            return existing, False

        account = self.linker.create_account(subject, claims, provider_id)
        try:
            self.linker.link(account, provider_id, subject)
        except LinkConflictError:
            # A concurrent login linked this subject first
            self.accounts.delete(account.uid)
            raise
        return account, True

    # ----- connect ----------------------------------------------------- #
    def _complete_connect(
        self,
        client: ProviderClient,
        tokens: TokenSet,
        context: FlowContext,
        current_user_id: str | None,
        outcome: FlowOutcome,
        log: logging.LoggerAdapter,
    ) -> None:
        failed = f"Connecting with {client.label} could not be completed due to an error."
        if not current_user_id or context.acting_user_id != current_user_id:
            log.warning("Rejected connect: acting user does not match the current user")
            outcome.add(MessageLevel.ERROR, failed)
            return
        account = self.accounts.get(current_user_id)
        subject = self.resolver.extract_subject(tokens.claims, tokens.userinfo)
        if account is None or subject is None:
            log.error("Connect failed: %s", "no account" if account is None else "no subject")
            outcome.add(MessageLevel.ERROR, failed)
            return

        try:
            self.linker.connect_existing(
                account, client.provider_id, subject, tokens.merged_claims
            )
        except LinkConflictError as exc:
            log.info("Connect refused: %s", exc.reason)
            owner = self.links.find_user_id(client.provider_id, subject)
            if owner is not None and owner != account.uid:
                outcome.add(
                    MessageLevel.ERROR,
                    f"Another user is already connected to this {client.label} account.",
                )
            else:
                outcome.add(MessageLevel.ERROR, failed)
            return

        outcome.state = FlowState.COMPLETED
        outcome.user_id = account.uid
        log.info("Connected uid=%s to subject=%s", account.uid, mask_sensitive(subject))
        outcome.add(MessageLevel.STATUS, f"Account successfully connected with {client.label}.")

    # ------------------------------------------------------------------ #
    # Logout                                                             #
    # ------------------------------------------------------------------ #
    def logout(
        self, session_key: str, post_logout_redirect_uri: str | None = None
    ) -> LogoutOutcome:
        """Clear the local session and collect provider end-session URLs.

        The cached id token is only sent as a hint to the provider that
        issued it. Providers without end-session support produce a warning.
        """
        session = self.session(session_key)
        user_id = session.current_user_id()
        id_token, token_provider = session.retrieve_id_token(clear=True)
        outcome = LogoutOutcome(
            redirect_url=post_logout_redirect_uri or self.settings.redirect_logout or "/"
        )
        if user_id:
            for provider_id in self.linker.connected_accounts(user_id):
                client = self.providers.get(provider_id)
                if client is None:
                    continue
                if not client.supports_end_session:
                    outcome.messages.append(
                        Message(
                            MessageLevel.WARNING,
                            f"{client.label} does not support log out. You are logged out "
                            f"of this site but not out of {client.label}.",
                        )
                    )
                    continue
                hint = id_token if token_provider == provider_id else None
                url = client.end_session_url(hint, post_logout_redirect_uri)
                if url:
                    outcome.end_session_urls.append(url)

        session.logout()
        session.add_messages(outcome.messages)
        if outcome.end_session_urls:
            outcome.redirect_url = outcome.end_session_urls[0]
        _LOG.info(
            "Logged out uid=%s (end-session redirects: %d)",
            user_id,
            len(outcome.end_session_urls),
        )
        return outcome

    # ------------------------------------------------------------------ #
    # Account management                                                 #
    # ------------------------------------------------------------------ #
    def login_options(self) -> dict[str, Any]:
        """Enabled providers and where the host should show them."""
        return {
            "display": self.settings.user_login_display.value,
            "providers": [
                {"id": client.provider_id, "label": client.label} for client in self.providers
            ],
        }

    def connected_accounts(self, user_id: str) -> list[dict[str, Any]]:
        """Connection status of every enabled provider for *user_id*."""
        linked = self.linker.connected_accounts(user_id)
        return [
            {
                "provider": client.provider_id,
                "label": client.label,
                "connected": client.provider_id in linked,
                "subject": linked.get(client.provider_id),
            }
            for client in self.providers
        ]

    def disconnect(self, user_id: str, provider_id: str, *, acting_user_id: str | None) -> bool:
        """Remove the link of *user_id*; only the owner may do so."""
        if not acting_user_id or acting_user_id != user_id:
            raise AccessDeniedError("Only the account owner can disconnect it.")
        return self.linker.disconnect(user_id, provider_id)

    def delete_account(self, user_id: str) -> None:
        """Delete a local account together with its identity links."""
        self.links.delete_links_for_user(user_id)
        self.accounts.delete(user_id)
        _LOG.info("Deleted account uid=%s", user_id)

    def current_user_id(self, session_key: str) -> str | None:
        return self.session(session_key).current_user_id()

    def pop_messages(self, session_key: str) -> list[Message]:
        return self.session(session_key).pop_messages()
