from __future__ import annotations

import threading
from typing import Any, Dict, List
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import pytest

from authcore.auth.config import (
    LocalDescriptor,
    LocalUserEntry,
    OAuth2Descriptor,
    RateLimitConfig,
    SessionConfig,
    WebAuthnDescriptor,
    parse_settings,
)
from authcore.auth.coordinator import AuthCoordinator, build_coordinator
from authcore.auth.errors import (
    ChallengeMismatchError,
    ConfigError,
    CsrfMismatchError,
    InvalidCredentialsError,
    MethodUnavailableError,
    NoCredentialsError,
    RateLimitedError,
    TokenExchangeError,
    UserCancelledError,
    VerificationError,
)
from authcore.auth.local import hash_password
from authcore.auth.models import CEREMONY_REGISTRATION, TokenSet

PASSWORD = "correct horse"


@pytest.fixture(scope="module")
def local_descriptor() -> LocalDescriptor:
    return LocalDescriptor(
        id="local",
        display_name="Password",
        users=[LocalUserEntry(username="alice", password_hash=hash_password(PASSWORD, rounds=4))],
    )


WEBAUTHN = WebAuthnDescriptor(id="webauthn", display_name="Passkey", origins=["http://localhost:8080"], fallback="local")
GITHUB = OAuth2Descriptor(
    id="github",
    client_id="gh-client",
    authorize_url="https://github.com/login/oauth/authorize",
    userinfo_url="https://api.github.com/user",
)


class FakeExchanger:
    def __init__(self) -> None:
        self.calls: List[Any] = []

    def exchange(self, callback):  # type: ignore[no-untyped-def]
        self.calls.append(callback)
        return TokenSet(access_token="at-123")


class FakeUserInfo:
    def __init__(self, info: Dict[str, Any]) -> None:
        self.info = info

    def fetch(self, descriptor, tokens):  # type: ignore[no-untyped-def]
        return self.info


def _coordinator(store, clock, local_descriptor, **kw) -> AuthCoordinator:
    rate_limit = kw.pop("rate_limit", None)
    descriptors = kw.pop("descriptors", None) or [local_descriptor, WEBAUTHN, GITHUB]
    c = AuthCoordinator(
        store,
        session_config=SessionConfig(secret="test-secret"),
        public_base_url="http://localhost:8080",
        clock=clock,
        **kw,
    )
    c.configure(descriptors, rate_limit)
    return c


def _state(url: str) -> str:
    return parse_qs(urlsplit(url).query)["state"][0]


# ---- configure ----


def test_configure_rejects_duplicate_ids(store, clock, local_descriptor) -> None:
    c = AuthCoordinator(store, clock=clock)
    with pytest.raises(ConfigError):
        c.configure([local_descriptor, local_descriptor])


def test_configure_rejects_second_webauthn(store, clock) -> None:
    c = AuthCoordinator(store, clock=clock)
    with pytest.raises(ConfigError):
        c.configure([WebAuthnDescriptor(id="webauthn"), WebAuthnDescriptor(id="yubikey")])


def test_configure_rejects_fallback_to_missing_local(store, clock) -> None:
    c = AuthCoordinator(store, clock=clock)
    with pytest.raises(ConfigError):
        c.configure([WEBAUTHN])


def test_configure_rejects_unknown_default_method(store, clock, local_descriptor) -> None:
    c = AuthCoordinator(store, clock=clock)
    with pytest.raises(ConfigError):
        c.configure([local_descriptor], default_method="github")


def test_failed_configure_keeps_previous_configuration(store, clock, local_descriptor) -> None:
    c = _coordinator(store, clock, local_descriptor)
    with pytest.raises(ConfigError):
        c.configure([WEBAUTHN])
    assert [m.id for m in c.available_methods()] == ["local", "github"]


# ---- available methods ----


def test_available_methods_hide_unsupported_webauthn(store, clock, local_descriptor) -> None:
    c = _coordinator(store, clock, local_descriptor)
    assert [m.id for m in c.available_methods()] == ["local", "github"]


def test_available_methods_include_webauthn_with_platform(store, clock, local_descriptor, platform) -> None:
    c = _coordinator(store, clock, local_descriptor, platform=platform)
    methods = c.available_methods()
    assert [(m.id, m.kind) for m in methods] == [("local", "local"), ("webauthn", "webauthn"), ("github", "oauth2")]
    assert methods[1].name == "Passkey"


def test_remote_platform_lists_webauthn(store, clock, local_descriptor) -> None:
    c = _coordinator(store, clock, local_descriptor, remote_platform=True)
    assert "webauthn" in [m.id for m in c.available_methods()]


def test_disabled_methods_are_hidden_and_counted(store, clock, local_descriptor) -> None:
    disabled = GITHUB.model_copy(update={"enabled": False})
    c = _coordinator(store, clock, local_descriptor, descriptors=[local_descriptor, disabled])
    assert [m.id for m in c.available_methods()] == ["local"]
    with pytest.raises(MethodUnavailableError):
        c.authenticate("github")
    assert c.rate_limiter.entry("github").count == 1  # type: ignore[union-attr]


# ---- local ----


def test_local_success_creates_session_and_resets_limiter(store, clock, local_descriptor) -> None:
    c = _coordinator(store, clock, local_descriptor)
    with pytest.raises(InvalidCredentialsError):
        c.authenticate("local", {"username": "alice", "password": "nope"})
    assert c.rate_limiter.entry("local") is not None

    result = c.authenticate("local", {"username": "alice", "password": PASSWORD})
    assert result.success is True
    assert result.method == "local"
    assert result.user.username == "alice"  # type: ignore[union-attr]
    assert c.current_session().user.username == "alice"  # type: ignore[union-attr]
    assert c.rate_limiter.entry("local") is None


def test_failed_attempt_writes_no_session(store, clock, local_descriptor) -> None:
    c = _coordinator(store, clock, local_descriptor)
    with pytest.raises(InvalidCredentialsError):
        c.authenticate("local", {"username": "alice", "password": "nope"})
    assert c.current_session() is None


def test_five_wrong_passwords_then_rate_limited(store, clock, local_descriptor) -> None:
    c = _coordinator(store, clock, local_descriptor)
    for _ in range(5):
        with pytest.raises(InvalidCredentialsError):
            c.authenticate("local", {"username": "alice", "password": "wrong"})

    with pytest.raises(RateLimitedError) as ei:
        c.authenticate("local", {"username": "alice", "password": PASSWORD})
    assert ei.value.retry_after is not None
    assert c.current_session() is None
    # The rejected call is not itself counted.
    assert c.rate_limiter.entry("local").count == 5  # type: ignore[union-attr]

    clock.advance(minutes=15, seconds=1)
    assert c.authenticate("local", {"username": "alice", "password": PASSWORD}).success is True


def test_unknown_method_is_not_counted(store, clock, local_descriptor) -> None:
    c = _coordinator(store, clock, local_descriptor)
    with pytest.raises(MethodUnavailableError):
        c.authenticate("gitlab")
    assert c.rate_limiter.entry("gitlab") is None


def test_logout_is_idempotent(store, clock, local_descriptor) -> None:
    c = _coordinator(store, clock, local_descriptor)
    c.authenticate("local", {"username": "alice", "password": PASSWORD})
    c.logout()
    c.logout()
    assert c.current_session() is None


# ---- OAuth2 ----


def test_oauth2_authenticate_returns_redirect_without_session(store, clock, local_descriptor) -> None:
    c = _coordinator(store, clock, local_descriptor)
    result = c.authenticate("github")
    assert result.success is False
    assert result.redirect is not None
    assert result.redirect.url.startswith("https://github.com/login/oauth/authorize?")
    assert c.current_session() is None


def test_complete_oauth2_creates_session(store, clock, local_descriptor) -> None:
    exchanger = FakeExchanger()
    c = _coordinator(
        store,
        clock,
        local_descriptor,
        token_exchanger=exchanger,
        userinfo_fetcher=FakeUserInfo({"login": "octocat", "name": "Octo"}),
    )
    state = _state(c.authenticate("github").redirect.url)  # type: ignore[union-attr]

    result = c.complete_oauth2({"code": "abc", "state": state})
    assert result.success is True
    assert result.method == "github"
    assert c.current_session().user.username == "octocat"  # type: ignore[union-attr]
    assert exchanger.calls[0].code == "abc"
    assert len(exchanger.calls[0].code_verifier) == 86


def test_csrf_mismatch_never_reaches_exchange(store, clock, local_descriptor) -> None:
    exchanger = MagicMock()
    c = _coordinator(store, clock, local_descriptor, token_exchanger=exchanger, userinfo_fetcher=MagicMock())
    c.authenticate("github")
    with pytest.raises(CsrfMismatchError):
        c.complete_oauth2({"code": "abc", "state": "forged"})
    exchanger.exchange.assert_not_called()
    assert c.rate_limiter.entry("github").count == 1  # type: ignore[union-attr]
    assert c.current_session() is None


def test_complete_oauth2_without_usable_identity_fails(store, clock, local_descriptor) -> None:
    c = _coordinator(
        store,
        clock,
        local_descriptor,
        token_exchanger=FakeExchanger(),
        userinfo_fetcher=FakeUserInfo({"name": "anonymous"}),
    )
    state = _state(c.authenticate("github").redirect.url)  # type: ignore[union-attr]
    with pytest.raises(InvalidCredentialsError):
        c.complete_oauth2({"code": "abc", "state": state})
    assert c.current_session() is None


def test_complete_oauth2_without_exchanger_is_unavailable(store, clock, local_descriptor) -> None:
    c = _coordinator(store, clock, local_descriptor)
    state = _state(c.authenticate("github").redirect.url)  # type: ignore[union-attr]
    with pytest.raises(MethodUnavailableError):
        c.complete_oauth2({"code": "abc", "state": state})


def test_lock_is_free_while_exchanging_tokens(store, clock, local_descriptor) -> None:
    acquired: List[bool] = []

    def try_lock() -> None:
        got = c.lock.acquire(blocking=False)
        if got:
            c.lock.release()
        acquired.append(got)

    class SlowExchanger:
        def exchange(self, callback):  # type: ignore[no-untyped-def]
            # Another request thread must be able to take the lock meanwhile.
            t = threading.Thread(target=try_lock)
            t.start()
            t.join()
            return TokenSet(access_token="at")

    c = _coordinator(
        store,
        clock,
        local_descriptor,
        token_exchanger=SlowExchanger(),
        userinfo_fetcher=FakeUserInfo({"login": "octocat"}),
    )
    state = _state(c.authenticate("github").redirect.url)  # type: ignore[union-attr]
    assert c.complete_oauth2({"code": "abc", "state": state}).success is True
    assert acquired == [True]


def test_failed_exchange_is_counted(store, clock, local_descriptor) -> None:
    exchanger = MagicMock()
    exchanger.exchange.side_effect = TokenExchangeError("boom")
    c = _coordinator(store, clock, local_descriptor, token_exchanger=exchanger, userinfo_fetcher=MagicMock())
    state = _state(c.authenticate("github").redirect.url)  # type: ignore[union-attr]
    with pytest.raises(TokenExchangeError):
        c.complete_oauth2({"code": "abc", "state": state})
    assert c.rate_limiter.entry("github").count == 1  # type: ignore[union-attr]
    assert c.current_session() is None


# ---- WebAuthn ----


def _signed_in_with_passkey(store, clock, local_descriptor, platform, verifier) -> AuthCoordinator:
    c = _coordinator(store, clock, local_descriptor, platform=platform, verifier=verifier)
    c.authenticate("local", {"username": "alice", "password": PASSWORD})
    c.register_passkey()
    return c


def test_register_passkey_requires_session(store, clock, local_descriptor, platform, verifier) -> None:
    c = _coordinator(store, clock, local_descriptor, platform=platform, verifier=verifier)
    with pytest.raises(InvalidCredentialsError):
        c.register_passkey()


def test_passkey_registration_and_login(store, clock, local_descriptor, platform, verifier) -> None:
    c = _signed_in_with_passkey(store, clock, local_descriptor, platform, verifier)
    assert [cred.owner_username for cred in c.list_credentials()] == ["alice"]
    assert len(verifier.registrations) == 1

    c.logout()
    result = c.authenticate("webauthn")
    assert result.success is True
    assert result.user.username == "alice"  # type: ignore[union-attr]
    assert c.current_session().method == "webauthn"  # type: ignore[union-attr]
    assert len(verifier.assertions) == 1


def test_rejected_registration_is_not_stored(store, clock, local_descriptor, platform, verifier) -> None:
    c = _coordinator(store, clock, local_descriptor, platform=platform, verifier=verifier)
    c.authenticate("local", {"username": "alice", "password": PASSWORD})
    verifier.reject = True
    with pytest.raises(VerificationError):
        c.register_passkey()
    assert c.list_credentials() == []


def test_webauthn_without_credentials(store, clock, local_descriptor, platform, verifier) -> None:
    c = _coordinator(store, clock, local_descriptor, platform=platform, verifier=verifier)
    with pytest.raises(NoCredentialsError):
        c.authenticate("webauthn")
    assert platform.calls == []


def test_webauthn_without_verifier_fails_closed(store, clock, local_descriptor, platform) -> None:
    c = _coordinator(store, clock, local_descriptor, platform=platform)
    with pytest.raises(MethodUnavailableError) as ei:
        c.authenticate("webauthn")
    assert ei.value.fallback == "local"


def test_user_cancellation_is_counted(store, clock, local_descriptor, platform, verifier) -> None:
    c = _signed_in_with_passkey(store, clock, local_descriptor, platform, verifier)
    c.logout()
    platform.error = "NotAllowedError"
    with pytest.raises(UserCancelledError):
        c.authenticate("webauthn")
    assert c.rate_limiter.entry("webauthn").count == 1  # type: ignore[union-attr]
    assert c.current_session() is None


def test_two_step_passkey_login(store, clock, local_descriptor, platform, verifier) -> None:
    c = _signed_in_with_passkey(store, clock, local_descriptor, platform, verifier)
    c.logout()

    pending = c.begin_passkey_login()
    result = c.complete_passkey_login(platform.assertion(pending.options.as_dict()))
    assert result.success is True
    assert c.current_session().user.username == "alice"  # type: ignore[union-attr]


def test_two_step_replay_is_rejected(store, clock, local_descriptor, platform, verifier) -> None:
    c = _signed_in_with_passkey(store, clock, local_descriptor, platform, verifier)
    c.logout()
    pending = c.begin_passkey_login()
    raw = platform.assertion(pending.options.as_dict())
    c.complete_passkey_login(raw)
    c.logout()
    with pytest.raises(ChallengeMismatchError):
        c.complete_passkey_login(raw)
    assert c.current_session() is None


def test_cancel_passkey_counts_dismissed_login(store, clock, local_descriptor, platform, verifier) -> None:
    c = _signed_in_with_passkey(store, clock, local_descriptor, platform, verifier)
    c.logout()
    c.begin_passkey_login()
    with pytest.raises(UserCancelledError):
        c.cancel_passkey()
    assert c.rate_limiter.entry("webauthn").count == 1  # type: ignore[union-attr]
    # A fresh ceremony can start right away.
    c.begin_passkey_login()


def test_two_step_registration(store, clock, local_descriptor, platform, verifier) -> None:
    c = _coordinator(store, clock, local_descriptor, remote_platform=True, verifier=verifier)
    c.authenticate("local", {"username": "alice", "password": PASSWORD})
    pending = c.begin_passkey_registration()
    credential = c.complete_passkey_registration(platform.attestation(pending.options.as_dict()))
    assert credential.owner_username == "alice"
    assert c.list_credentials("alice") == [credential]


def test_cancel_without_pending_login_is_not_counted(store, clock, local_descriptor, platform, verifier) -> None:
    c = _coordinator(store, clock, local_descriptor, remote_platform=True, verifier=verifier)
    with pytest.raises(UserCancelledError):
        c.cancel_passkey()
    assert c.rate_limiter.entry("webauthn") is None


def test_registration_cannot_finish_after_logout(store, clock, local_descriptor, platform, verifier) -> None:
    c = _coordinator(store, clock, local_descriptor, remote_platform=True, verifier=verifier)
    c.authenticate("local", {"username": "alice", "password": PASSWORD})
    pending = c.begin_passkey_registration()
    c.logout()

    with pytest.raises(InvalidCredentialsError):
        c.complete_passkey_registration(platform.attestation(pending.options.as_dict()))
    assert c.list_credentials() == []
    assert c.webauthn.pending(CEREMONY_REGISTRATION) is None  # type: ignore[union-attr]
    assert verifier.registrations == []


def test_registration_cannot_finish_as_another_user(store, clock, local_descriptor, platform, verifier) -> None:
    c = _coordinator(
        store,
        clock,
        local_descriptor,
        remote_platform=True,
        verifier=verifier,
        token_exchanger=FakeExchanger(),
        userinfo_fetcher=FakeUserInfo({"login": "octocat"}),
    )
    c.authenticate("local", {"username": "alice", "password": PASSWORD})
    pending = c.begin_passkey_registration()
    # Someone else signs in on the same instance before the ceremony finishes.
    state = _state(c.authenticate("github").redirect.url)  # type: ignore[union-attr]
    c.complete_oauth2({"code": "abc", "state": state})

    with pytest.raises(InvalidCredentialsError):
        c.complete_passkey_registration(platform.attestation(pending.options.as_dict()))
    assert c.list_credentials() == []


def test_revoked_credential_cannot_log_in(store, clock, local_descriptor, platform, verifier) -> None:
    c = _signed_in_with_passkey(store, clock, local_descriptor, platform, verifier)
    cred_id = c.list_credentials()[0].id
    assert c.revoke_credential(cred_id) is True
    assert c.revoke_credential(cred_id) is False
    c.logout()
    with pytest.raises(NoCredentialsError):
        c.authenticate("webauthn")


# ---- wiring ----


def test_build_coordinator_from_settings(store, clock) -> None:
    settings = parse_settings(
        {
            "providers": {
                "local": {"users": [{"username": "alice", "passwordHash": hash_password(PASSWORD, rounds=4)}]},
                "github": {"kind": "oauth2", "clientId": "x", "authorizeUrl": "https://gh/authorize"},
            },
            "security": {"rateLimit": {"maxAttempts": 2}},
            "session": {"secret": "s"},
            "defaultMethod": "local",
            "publicBaseUrl": "http://localhost:8080",
        }
    )
    c = build_coordinator(settings, backend=store, clock=clock)
    assert c.default_method == "local"
    assert [m.id for m in c.available_methods()] == ["local", "github"]
    for _ in range(2):
        with pytest.raises(InvalidCredentialsError):
            c.authenticate("local", {"username": "alice", "password": "bad"})
    with pytest.raises(RateLimitedError):
        c.authenticate("local", {"username": "alice", "password": PASSWORD})
