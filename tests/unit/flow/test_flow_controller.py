"""
Scenario tests for AuthorizationFlowController.

A scripted provider stands in for the identity provider; stores and
sessions are in memory and the clock is fake.
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from oidc_connect.flow.errors import AccessDeniedError, ProviderError, SequenceError, UserDeclinedError
from oidc_connect.flow.models import FlowState, IdentityLink, Message, MessageLevel, Operation
from oidc_connect.flow.session import DESTINATION_KEY, OP_KEY, FlowSession
from oidc_connect.flow.service import classify_provider_error
from oidc_connect.flow.settings import RegistrationPolicy


# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #
def _start(controller, session_key: str, op: Operation = Operation.LOGIN, provider: str = "keycloak", **kwargs) -> str:  # noqa: ANN001, ANN003
    """Initiate a flow and return the state echoed by the provider."""
    url = controller.initiate(session_key, provider, op, **kwargs)
    return parse_qs(urlparse(url).query)["state"][0]


def _texts(outcome) -> list[str]:  # noqa: ANN001
    return [m.text for m in outcome.messages]


# --------------------------------------------------------------------------- #
# initiate                                                                    #
# --------------------------------------------------------------------------- #
def test_initiate_login_records_context(controller, sessions, session_key) -> None:  # noqa: ANN001
    url = controller.initiate(session_key, "keycloak", Operation.LOGIN, scopes=["openid", "email"])

    query = parse_qs(urlparse(url).query)
    assert query["scope"] == ["openid email"]
    assert query["state"][0]
    op = sessions.get(session_key, OP_KEY)
    assert op["operation"] == "login"
    assert op["user_id"] is None
    assert op["provider_id"] == "keycloak"


def test_initiate_derives_scopes_from_mappings(controller, session_key) -> None:  # noqa: ANN001
    url = controller.initiate(session_key, "keycloak")
    assert parse_qs(urlparse(url).query)["scope"] == ["openid email profile"]


def test_initiate_unknown_provider(controller, session_key) -> None:  # noqa: ANN001
    with pytest.raises(SequenceError):
        controller.initiate(session_key, "nope")


# --------------------------------------------------------------------------- #
# callback gates                                                              #
# --------------------------------------------------------------------------- #
def test_login_creates_account_and_link(controller, users, provider, session_key) -> None:  # noqa: ANN001
    state = _start(controller, session_key, destination="/node/5?tab=2", locale="fr")

    outcome = controller.callback(session_key, "keycloak", state=state, code="c0de")

    assert outcome.state is FlowState.COMPLETED
    assert outcome.redirect_path == "/node/5?tab=2"
    assert outcome.locale == "fr"
    account = users.find_by_mail("alice@example.com")
    assert account is not None and account.name == "Alice"
    assert outcome.user_id == account.uid
    assert users.find_user_id("keycloak", "sub-1") == account.uid
    assert provider.exchanged == ["c0de"]

    # the session moved to a new key; the old one is anonymous
    assert outcome.session_key and outcome.session_key != session_key
    assert controller.current_user_id(session_key) is None
    session = controller.session(outcome.session_key)
    assert session.current_user_id() == account.uid
    assert session.retrieve_id_token() == ("header.payload.signature", "keycloak")
    assert session.retrieve_access_token() == "access-token-value"


def test_state_mismatch_is_access_denied_without_side_effects(controller, sessions, provider, session_key) -> None:  # noqa: ANN001
    state = _start(controller, session_key)

    with pytest.raises(AccessDeniedError):
        controller.callback(session_key, "keycloak", state=state + "tampered", code="c")

    # context untouched, nothing exchanged
    assert sessions.get(session_key, OP_KEY) is not None
    assert sessions.get(session_key, DESTINATION_KEY) is not None
    assert provider.exchanged == []


def test_missing_state_is_access_denied(controller, session_key) -> None:  # noqa: ANN001
    _start(controller, session_key)
    with pytest.raises(AccessDeniedError):
        controller.callback(session_key, "keycloak", state=None, code="c")


def test_callback_without_initiate_is_access_denied(controller, session_key) -> None:  # noqa: ANN001
    with pytest.raises(AccessDeniedError):
        controller.callback(session_key, "keycloak", state="", code="c")


def test_replayed_callback_is_rejected(controller, session_key) -> None:  # noqa: ANN001
    state = _start(controller, session_key)
    controller.callback(session_key, "keycloak", state=state, code="c")

    with pytest.raises(AccessDeniedError):
        controller.callback(session_key, "keycloak", state=state, code="c")


def test_only_latest_flow_completes(controller, session_key) -> None:  # noqa: ANN001
    first = _start(controller, session_key)
    second = _start(controller, session_key)

    with pytest.raises(AccessDeniedError):
        controller.callback(session_key, "keycloak", state=first, code="c")
    # the failed attempt consumed the pending token as well
    with pytest.raises(AccessDeniedError):
        controller.callback(session_key, "keycloak", state=second, code="c")


def test_missing_context_is_sequence_error(controller, sessions, session_key) -> None:  # noqa: ANN001
    state = _start(controller, session_key)
    sessions.pop(session_key, OP_KEY)

    with pytest.raises(SequenceError):
        controller.callback(session_key, "keycloak", state=state, code="c")


def test_expired_context_is_sequence_error(controller, clock, session_key) -> None:  # noqa: ANN001
    state = _start(controller, session_key)
    clock.advance(901)

    with pytest.raises(SequenceError):
        controller.callback(session_key, "keycloak", state=state, code="c")


def test_callback_on_other_provider_is_sequence_error(make_controller, provider_factory, session_key) -> None:  # noqa: ANN001
    controller = make_controller(provider_factory("google", "Google"))
    state = _start(controller, session_key, provider="keycloak")

    with pytest.raises(SequenceError):
        controller.callback(session_key, "google", state=state, code="c")


def test_missing_code_is_sequence_error(controller, sessions, provider, session_key) -> None:  # noqa: ANN001
    state = _start(controller, session_key)

    with pytest.raises(SequenceError):
        controller.callback(session_key, "keycloak", state=state)
    assert sessions.get(session_key, OP_KEY) is None
    assert provider.exchanged == []


# --------------------------------------------------------------------------- #
# provider errors                                                             #
# --------------------------------------------------------------------------- #
def test_consent_required_is_user_declined(controller, sessions, provider, session_key) -> None:  # noqa: ANN001
    state = _start(controller, session_key)

    outcome = controller.callback(session_key, "keycloak", state=state, error="consent_required")

    assert outcome.state is FlowState.REJECTED
    assert outcome.messages == [Message(MessageLevel.WARNING, "Logging in with Keycloak has been canceled.")]
    assert provider.exchanged == []
    assert sessions.get(session_key, OP_KEY) is None
    assert controller.session(session_key).current_user_id() is None


@pytest.mark.parametrize("error", ["login_required", "interaction_required", "account_selection_required"])
def test_declined_errors_classified(error: str) -> None:
    exc = classify_provider_error("keycloak", error, "ignored")
    assert isinstance(exc, UserDeclinedError)
    assert exc.to_payload() == {"error": "user_declined", "provider": "keycloak", "provider_error": error}


def test_other_errors_classified_as_provider_error() -> None:
    exc = classify_provider_error("keycloak", "server_error", "db down")
    assert isinstance(exc, ProviderError)
    assert exc.description == "db down"


def test_declined_login_logs_no_error(controller, session_key, caplog) -> None:  # noqa: ANN001
    state = _start(controller, session_key)
    with caplog.at_level("DEBUG", logger="oidc-connect.flow.service"):
        controller.callback(session_key, "keycloak", state=state, error="login_required")

    assert not [r for r in caplog.records if r.levelname == "ERROR"]
    assert any("declined" in r.getMessage() for r in caplog.records)


def test_other_provider_error_is_generic_failure(controller, provider, session_key, caplog) -> None:  # noqa: ANN001
    state = _start(controller, session_key)

    with caplog.at_level("ERROR", logger="oidc-connect.flow.service"):
        outcome = controller.callback(
            session_key, "keycloak", state=state, error="server_error", error_description="db down"
        )

    assert outcome.state is FlowState.REJECTED
    assert _texts(outcome) == ["Could not authenticate with Keycloak."]
    assert "server_error" in caplog.text and "db down" in caplog.text
    assert provider.exchanged == []


def test_exchange_failure_is_rejected(controller, provider, users, session_key) -> None:  # noqa: ANN001
    provider.result = ProviderError(provider_id="keycloak", error="http_400", description="bad code")
    state = _start(controller, session_key)

    outcome = controller.callback(session_key, "keycloak", state=state, code="c")

    assert outcome.state is FlowState.REJECTED
    assert _texts(outcome) == [
        "Failed to get authentication tokens for Keycloak. Check logs for further details."
    ]
    assert users.find_by_mail("alice@example.com") is None


# --------------------------------------------------------------------------- #
# login policy                                                                #
# --------------------------------------------------------------------------- #
def test_existing_link_logs_in_same_account(controller, users, session_key) -> None:  # noqa: ANN001
    account = users.create(name="someone", mail="other@example.com")
    users.create_link(IdentityLink(user_id=account.uid, provider_id="keycloak", subject="sub-1"))

    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    assert outcome.state is FlowState.COMPLETED
    assert outcome.user_id == account.uid
    assert users.find_by_mail("alice@example.com") is None


def test_always_save_userinfo_updates_linked_account(make_controller, users, provider, tokens, session_key) -> None:  # noqa: ANN001
    controller = make_controller(always_save_userinfo=True)
    account = users.create(name="someone", mail="alice@example.com")
    users.create_link(IdentityLink(user_id=account.uid, provider_id="keycloak", subject="sub-1"))
    provider.result = tokens("sub-1", zoneinfo="Europe/Berlin")

    controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    assert account.fields == {"timezone": "Europe/Berlin"}


def test_connect_existing_users_links_by_email(make_controller, users, session_key) -> None:  # noqa: ANN001
    controller = make_controller(connect_existing_users=True)
    existing = users.create(name="alice.local", mail="Alice@Example.com")

    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    assert outcome.state is FlowState.COMPLETED
    assert outcome.user_id == existing.uid
    assert users.find_user_id("keycloak", "sub-1") == existing.uid
    assert users.find_by_name("Alice") is None


def test_email_taken_without_connect_existing(controller, users, session_key) -> None:  # noqa: ANN001
    existing = users.create(name="alice.local", mail="alice@example.com")

    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    assert outcome.state is FlowState.REJECTED
    assert "The e-mail address is already taken: alice@example.com" in _texts(outcome)
    assert "Logging in with Keycloak could not be completed due to an error." in _texts(outcome)
    assert users.links_for_user(existing.uid) == []


def test_invalid_email_rejected(controller, provider, users, tokens, session_key) -> None:  # noqa: ANN001
    provider.result = tokens("sub-1", email="not-an-email")

    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    assert outcome.state is FlowState.REJECTED
    assert users.find_by_name("Alice") is None


def test_admin_only_registration_denied(make_controller, users, session_key) -> None:  # noqa: ANN001
    controller = make_controller(user_register=RegistrationPolicy.ADMIN_ONLY)

    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    assert outcome.state is FlowState.REJECTED
    assert "Only administrators can register new accounts." in _texts(outcome)
    assert users.find_by_mail("alice@example.com") is None


def test_override_registration_allows_federated_signup(make_controller, users, session_key) -> None:  # noqa: ANN001
    controller = make_controller(
        user_register=RegistrationPolicy.ADMIN_ONLY, override_registration_settings=True
    )

    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    assert outcome.state is FlowState.COMPLETED
    assert users.find_by_mail("alice@example.com").status is True


def test_admin_approval_creates_blocked_account(make_controller, users, session_key) -> None:  # noqa: ANN001
    controller = make_controller(user_register=RegistrationPolicy.VISITORS_ADMIN_APPROVAL)

    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    account = users.find_by_mail("alice@example.com")
    assert account is not None and account.status is False
    assert users.find_user_id("keycloak", "sub-1") == account.uid
    assert outcome.state is FlowState.REJECTED
    assert [m.level for m in outcome.messages] == [MessageLevel.WARNING]
    assert "pending approval" in outcome.messages[0].text
    assert controller.session(session_key).current_user_id() is None


def test_blocked_account_cannot_log_in(controller, users, session_key) -> None:  # noqa: ANN001
    account = users.create(name="alice", mail="alice@example.com", status=False)
    users.create_link(IdentityLink(user_id=account.uid, provider_id="keycloak", subject="sub-1"))

    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    assert outcome.state is FlowState.REJECTED
    assert _texts(outcome) == ["The user has been blocked."]
    assert controller.session(session_key).current_user_id() is None


def test_conflicting_subjects_fail_closed(controller, provider, users, tokens, session_key) -> None:  # noqa: ANN001
    provider.result = tokens("sub-1", userinfo={"sub": "sub-2"})

    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    assert outcome.state is FlowState.REJECTED
    assert _texts(outcome) == ["Logging in with Keycloak could not be completed due to an error."]
    assert users.find_by_mail("alice@example.com") is None


def test_username_collision_gets_suffix(controller, users, session_key) -> None:  # noqa: ANN001
    users.create(name="Alice", mail="someone-else@example.com")

    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")

    assert outcome.state is FlowState.COMPLETED
    assert users.get(outcome.user_id).name == "Alice_1"


def test_messages_are_queued_in_session(controller, session_key) -> None:  # noqa: ANN001
    state = _start(controller, session_key)
    controller.callback(session_key, "keycloak", state=state, error="login_required")

    assert [m.level for m in controller.pop_messages(session_key)] == [MessageLevel.WARNING]
    assert controller.pop_messages(session_key) == []


def test_empty_destination_returns_to_site_root(controller, session_key) -> None:  # noqa: ANN001
    outcome = controller.callback(
        session_key, "keycloak", state=_start(controller, session_key, destination="/"), code="c"
    )
    assert outcome.redirect_path == "/"


# --------------------------------------------------------------------------- #
# connect                                                                     #
# --------------------------------------------------------------------------- #
def _logged_in(users, session_key: str, controller, name: str = "bob") -> tuple[str, str]:  # noqa: ANN001
    """Log a new account in; return its uid and the rotated session key."""
    account = users.create(name=name, mail=f"{name}@example.com")
    return account.uid, controller.session(session_key).login(account.uid)


def test_connect_success(controller, users, session_key) -> None:  # noqa: ANN001
    uid, session_key = _logged_in(users, session_key, controller)
    state = _start(controller, session_key, Operation.CONNECT, acting_user_id=uid, destination="user")

    outcome = controller.callback(session_key, "keycloak", state=state, code="c", current_user_id=uid)

    assert outcome.state is FlowState.COMPLETED
    assert outcome.operation is Operation.CONNECT
    assert _texts(outcome) == ["Account successfully connected with Keycloak."]
    assert users.find_user_id("keycloak", "sub-1") == uid
    # no account created from the claims
    assert users.find_by_mail("alice@example.com") is None


def test_connect_requires_matching_user(controller, users, session_key) -> None:  # noqa: ANN001
    uid, session_key = _logged_in(users, session_key, controller)
    other = users.create(name="mallory", mail=None).uid
    state = _start(controller, session_key, Operation.CONNECT, acting_user_id=uid)

    outcome = controller.callback(session_key, "keycloak", state=state, code="c", current_user_id=other)

    assert outcome.state is FlowState.REJECTED
    assert users.find_user_id("keycloak", "sub-1") is None
    assert users.links_for_user(uid) == [] and users.links_for_user(other) == []


def test_connect_anonymous_callback_rejected(controller, users, session_key) -> None:  # noqa: ANN001
    uid, session_key = _logged_in(users, session_key, controller)
    state = _start(controller, session_key, Operation.CONNECT, acting_user_id=uid)

    outcome = controller.callback(session_key, "keycloak", state=state, code="c", current_user_id=None)

    assert outcome.state is FlowState.REJECTED
    assert users.find_user_id("keycloak", "sub-1") is None


def test_connect_subject_owned_by_other_user(controller, users, session_key) -> None:  # noqa: ANN001
    owner = users.create(name="owner", mail=None)
    users.create_link(IdentityLink(user_id=owner.uid, provider_id="keycloak", subject="sub-1"))
    uid, session_key = _logged_in(users, session_key, controller)
    state = _start(controller, session_key, Operation.CONNECT, acting_user_id=uid)

    outcome = controller.callback(session_key, "keycloak", state=state, code="c", current_user_id=uid)

    assert outcome.state is FlowState.REJECTED
    assert _texts(outcome) == ["Another user is already connected to this Keycloak account."]
    assert users.links_for_user(uid) == []


def test_connect_declined(controller, users, session_key) -> None:  # noqa: ANN001
    uid, session_key = _logged_in(users, session_key, controller)
    state = _start(controller, session_key, Operation.CONNECT, acting_user_id=uid)

    outcome = controller.callback(
        session_key, "keycloak", state=state, error="interaction_required", current_user_id=uid
    )
    assert outcome.state is FlowState.REJECTED
    assert users.links_for_user(uid) == []


# --------------------------------------------------------------------------- #
# logout & account management                                                 #
# --------------------------------------------------------------------------- #
def test_logout_builds_end_session_url(controller, session_key) -> None:  # noqa: ANN001
    outcome = controller.callback(session_key, "keycloak", state=_start(controller, session_key), code="c")
    assert outcome.state is FlowState.COMPLETED
    session_key = outcome.session_key

    logout = controller.logout(session_key, post_logout_redirect_uri="https://app.example.com/")

    assert len(logout.end_session_urls) == 1
    query = parse_qs(urlparse(logout.redirect_url).query)
    assert query["id_token_hint"] == ["header.payload.signature"]
    assert query["post_logout_redirect_uri"] == ["https://app.example.com/"]
    session = controller.session(session_key)
    assert session.current_user_id() is None
    assert session.retrieve_id_token() == (None, None)


def test_logout_warns_for_provider_without_end_session(make_controller, provider_factory, users, session_key) -> None:  # noqa: ANN001
    google = provider_factory("google", "Google", end_session=False)
    controller = make_controller(google)
    uid, session_key = _logged_in(users, session_key, controller)
    users.create_link(IdentityLink(user_id=uid, provider_id="google", subject="g-1"))

    logout = controller.logout(session_key)

    assert logout.end_session_urls == []
    assert logout.redirect_url == "/"
    assert [m.level for m in logout.messages] == [MessageLevel.WARNING]
    assert "Google does not support log out" in logout.messages[0].text
    # the warning survives the session reset for the next page view
    assert controller.pop_messages(session_key) == logout.messages


def test_logout_uses_configured_redirect(make_controller, session_key) -> None:  # noqa: ANN001
    controller = make_controller(redirect_logout="/goodbye")
    assert controller.logout(session_key).redirect_url == "/goodbye"


def test_login_options(make_controller, provider_factory) -> None:  # noqa: ANN001
    controller = make_controller(provider_factory("google", "Google"))
    assert controller.login_options() == {
        "display": "below",
        "providers": [
            {"id": "keycloak", "label": "Keycloak"},
            {"id": "google", "label": "Google"},
        ],
    }


def test_connected_accounts_and_disconnect(controller, users) -> None:  # noqa: ANN001
    account = users.create(name="bob", mail=None)
    users.create_link(IdentityLink(user_id=account.uid, provider_id="keycloak", subject="s"))

    assert controller.connected_accounts(account.uid) == [
        {"provider": "keycloak", "label": "Keycloak", "connected": True, "subject": "s"}
    ]
    with pytest.raises(AccessDeniedError):
        controller.disconnect(account.uid, "keycloak", acting_user_id="someone-else")

    assert controller.disconnect(account.uid, "keycloak", acting_user_id=account.uid) is True
    assert controller.disconnect(account.uid, "keycloak", acting_user_id=account.uid) is False
    assert controller.connected_accounts(account.uid)[0]["connected"] is False


def test_delete_account_cascades(controller, users) -> None:  # noqa: ANN001
    account = users.create(name="bob", mail=None)
    users.create_link(IdentityLink(user_id=account.uid, provider_id="keycloak", subject="s"))

    controller.delete_account(account.uid)

    assert users.get(account.uid) is None
    assert users.find_user_id("keycloak", "s") is None


def test_session_facade_type(controller, session_key) -> None:  # noqa: ANN001
    assert isinstance(controller.session(session_key), FlowSession)
