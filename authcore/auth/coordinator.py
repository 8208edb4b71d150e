from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar, Union

from authcore.auth.config import (
    AuthSettings,
    LocalDescriptor,
    OAuth2Descriptor,
    RateLimitConfig,
    SessionConfig,
    WebAuthnDescriptor,
)
from authcore.auth.errors import (
    ConfigError,
    InvalidCredentialsError,
    MethodUnavailableError,
    RateLimitedError,
    UserCancelledError,
)
from authcore.auth.exchange import (
    CredentialVerifier,
    HttpCredentialVerifier,
    HttpTokenExchanger,
    HttpUserInfoFetcher,
    TokenExchanger,
    UserInfoFetcher,
)
from authcore.auth.local import LocalAuthenticator
from authcore.auth.models import (
    CEREMONY_AUTHENTICATION,
    CEREMONY_REGISTRATION,
    AssertionOutcome,
    AuthResult,
    AuthUser,
    CallbackResult,
    Credential,
    LocalCredentials,
    MethodSummary,
    Session,
    utcnow,
)
from authcore.auth.oauth2 import OAuth2Flow
from authcore.auth.rate_limit import RateLimiter
from authcore.auth.session import SessionStore
from authcore.auth.webauthn import (
    CredentialRegistry,
    PendingAssertion,
    PendingRegistration,
    WebAuthnCeremony,
    WebAuthnPlatform,
)
from authcore.storage.base import KeyValueStore
from authcore.storage.ceremonies import CeremonyStore
from authcore.storage.local_store import LocalStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

Descriptor = Union[LocalDescriptor, WebAuthnDescriptor, OAuth2Descriptor]


class AuthCoordinator:
    """
    Single entry point for every authentication method.

    Owns the rate-limit entries and the session. Each attempt goes: rate-limit
    check, dispatch on the descriptor kind, then exactly one session write on
    success (and a limiter reset), or a recorded failure and the same error
    re-raised.
    """

    def __init__(
        self,
        backend: KeyValueStore,
        *,
        session_config: Optional[SessionConfig] = None,
        platform: Optional[WebAuthnPlatform] = None,
        verifier: Optional[CredentialVerifier] = None,
        token_exchanger: Optional[TokenExchanger] = None,
        userinfo_fetcher: Optional[UserInfoFetcher] = None,
        public_base_url: Optional[str] = None,
        remote_platform: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._backend = backend
        self._platform = platform
        self._verifier = verifier
        self._token_exchanger = token_exchanger
        self._userinfo_fetcher = userinfo_fetcher
        self._public_base_url = public_base_url
        # The authenticator lives in a browser that drives the two-step ceremony API.
        self._remote_platform = remote_platform
        self._clock = clock
        # Guards store read-modify-write; never held across collaborator HTTP calls.
        self._lock = threading.RLock()

        self._sessions = SessionStore(backend, session_config, clock=clock)
        self._credentials = CredentialRegistry(backend)
        self._limiter = RateLimiter(backend=backend, clock=clock)
        self._descriptors: Dict[str, Descriptor] = {}
        self._default_method: Optional[str] = None
        self._local: Optional[LocalAuthenticator] = None
        self._webauthn: Optional[WebAuthnCeremony] = None
        self._oauth2 = OAuth2Flow([], CeremonyStore(backend, "oauth2"), public_base_url=public_base_url, clock=clock)

    # ---- configuration ----

    def configure(
        self,
        descriptors: Sequence[Descriptor],
        rate_limit_config: Optional[RateLimitConfig] = None,
        *,
        default_method: Optional[str] = None,
    ) -> None:
        """
        Install provider descriptors and the rate-limit policy.

        Raises:
            ConfigError: duplicate ids, more than one webauthn descriptor, or a
                reference (fallback / default method) to a method that is not configured
        """
        by_id: Dict[str, Descriptor] = {}
        for d in descriptors:
            if d.id in by_id:
                raise ConfigError(f"duplicate provider id {d.id!r}")
            by_id[d.id] = d

        webauthn = [d for d in by_id.values() if isinstance(d, WebAuthnDescriptor)]
        if len(webauthn) > 1:
            raise ConfigError("at most one webauthn provider may be configured")

        refs = [(f"provider {d.id!r} fallback", d.fallback) for d in by_id.values() if d.fallback]
        if default_method:
            refs.append(("defaultMethod", default_method))
        for owner, ref in refs:
            if ref not in by_id:
                raise ConfigError(f"{owner} references {ref!r}, which is not configured")

        local = next((d for d in by_id.values() if isinstance(d, LocalDescriptor)), None)
        oauth2 = [d for d in by_id.values() if isinstance(d, OAuth2Descriptor)]

        self._descriptors = by_id
        self._default_method = default_method
        self._local = LocalAuthenticator(local) if local is not None else None
        self._webauthn = (
            WebAuthnCeremony(webauthn[0], CeremonyStore(self._backend, "webauthn"), self._platform, clock=self._clock)
            if webauthn
            else None
        )
        self._oauth2 = OAuth2Flow(
            oauth2,
            CeremonyStore(self._backend, "oauth2"),
            public_base_url=self._public_base_url,
            clock=self._clock,
        )
        self._limiter = RateLimiter(rate_limit_config, backend=self._backend, clock=self._clock)
        logger.info(
            "Configured auth providers: %s (rate_limit=%s)",
            ", ".join(f"{d.id}:{d.kind}" for d in by_id.values()) or "-",
            self._limiter.config.enabled,
        )

    @property
    def default_method(self) -> Optional[str]:
        return self._default_method

    @property
    def lock(self) -> threading.RLock:
        """Re-entrant lock callers hold to serialize operations on this coordinator."""
        return self._lock

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def oauth2(self) -> OAuth2Flow:
        return self._oauth2

    @property
    def webauthn(self) -> Optional[WebAuthnCeremony]:
        return self._webauthn

    def method_kind(self, method: str) -> Optional[str]:
        d = self._descriptors.get(method)
        return d.kind if d is not None else None

    def _webauthn_usable(self) -> bool:
        if self._webauthn is None:
            return False
        return self._remote_platform or self._webauthn.is_supported()

    def available_methods(self) -> List[MethodSummary]:
        methods: List[MethodSummary] = []
        for d in self._descriptors.values():
            if not d.enabled:
                continue
            if isinstance(d, WebAuthnDescriptor) and not self._webauthn_usable():
                continue
            methods.append(MethodSummary(id=d.id, name=d.name, kind=d.kind, icon=d.icon))
        return methods

    # ---- attempt plumbing ----

    def _descriptor(self, method: str) -> Descriptor:
        d = self._descriptors.get(method)
        if d is None:
            raise MethodUnavailableError(f"method {method!r} is not configured")
        return d

    def _check_allowed(self, method: str) -> None:
        if not self._limiter.allow(method):
            logger.warning("Rejected %s attempt: rate limited", method)
            raise RateLimitedError(
                f"too many failed {method} attempts", retry_after=self._limiter.retry_after(method)
            )

    def _failed(self, method: str, e: BaseException) -> None:
        self._limiter.record_failure(method)
        logger.warning("Authentication via %s failed: %s", method, getattr(e, "kind", type(e).__name__))

    def _guarded(self, method: str, attempt: Callable[[], T]) -> T:
        self._check_allowed(method)
        try:
            return attempt()
        except Exception as e:
            self._failed(method, e)
            raise

    def _succeed(self, method: str, user: AuthUser) -> AuthResult:
        self._sessions.create(user, method)
        self._limiter.reset(method)
        logger.info("Authenticated %s via %s", user.username, method)
        return AuthResult(success=True, method=method, user=user)

    def _unavailable(self, d: Descriptor, reason: str) -> MethodUnavailableError:
        return MethodUnavailableError(reason, fallback=d.fallback)

    # ---- single entry point ----

    def authenticate(
        self,
        method: str,
        credentials: Union[LocalCredentials, Mapping[str, Any], None] = None,
    ) -> AuthResult:
        """
        Authenticate with `method`.

        For oauth2 methods this starts the authorization and returns
        `AuthResult(success=False, redirect=...)`; the session is created later by
        `complete_oauth2`.
        """
        descriptor = self._descriptor(method)

        def attempt() -> Union[AuthUser, AuthResult]:
            if not descriptor.enabled:
                raise self._unavailable(descriptor, f"method {method!r} is disabled")
            if isinstance(descriptor, LocalDescriptor):
                if self._local is None:
                    raise self._unavailable(descriptor, "local auth is not configured")
                return self._local.authenticate(credentials)
            elif isinstance(descriptor, WebAuthnDescriptor):
                ceremony = self._require_webauthn(descriptor)
                verifier = self._require_verifier(descriptor)
                outcome = ceremony.perform_authentication(self._credentials.list())
                return self._verified_user(outcome, verifier)
            elif isinstance(descriptor, OAuth2Descriptor):
                redirect = self._oauth2.begin_authorization(method)
                return AuthResult(success=False, method=method, redirect=redirect)
            raise MethodUnavailableError(f"unsupported provider kind {descriptor.kind!r}")

        outcome = self._guarded(method, attempt)
        if isinstance(outcome, AuthResult):
            return outcome
        return self._succeed(method, outcome)

    # ---- WebAuthn ----

    def _webauthn_descriptor(self) -> WebAuthnDescriptor:
        for d in self._descriptors.values():
            if isinstance(d, WebAuthnDescriptor):
                return d
        raise MethodUnavailableError("webauthn is not configured")

    def _require_webauthn(self, descriptor: WebAuthnDescriptor) -> WebAuthnCeremony:
        if not descriptor.enabled:
            raise self._unavailable(descriptor, "webauthn is disabled")
        if self._webauthn is None:
            raise self._unavailable(descriptor, "webauthn is not configured")
        return self._webauthn

    def _require_verifier(self, descriptor: WebAuthnDescriptor) -> CredentialVerifier:
        if self._verifier is None:
            raise self._unavailable(descriptor, "no credential verifier configured")
        return self._verifier

    def _verified_user(self, outcome: AssertionOutcome, verifier: CredentialVerifier) -> AuthUser:
        credential = self._credentials.get(outcome.credential_id)
        if credential is None:
            raise InvalidCredentialsError("assertion used an unknown credential")
        verifier.verify_assertion(outcome, credential)
        return AuthUser(username=credential.owner_username, display_name=credential.owner_username)

    def begin_passkey_login(self) -> PendingAssertion:
        """First half of a passkey login driven by a remote platform (the browser)."""
        descriptor = self._webauthn_descriptor()

        def attempt() -> PendingAssertion:
            ceremony = self._require_webauthn(descriptor)
            self._require_verifier(descriptor)
            return ceremony.authenticate(self._credentials.list())

        return self._guarded(descriptor.id, attempt)

    def complete_passkey_login(self, raw: Dict[str, Any]) -> AuthResult:
        descriptor = self._webauthn_descriptor()

        def attempt() -> AuthUser:
            ceremony = self._require_webauthn(descriptor)
            verifier = self._require_verifier(descriptor)
            return self._verified_user(ceremony.complete_authentication(raw), verifier)

        return self._succeed(descriptor.id, self._guarded(descriptor.id, attempt))

    def cancel_passkey(self) -> None:
        """
        The platform reported that the user dismissed the prompt.

        Discards any pending ceremony. A dismissed login counts as a failed attempt.

        Raises:
            UserCancelledError: always, so callers report a dismissal rather than an expiry
        """
        descriptor = self._webauthn_descriptor()
        ceremony = self._require_webauthn(descriptor)
        had_login = ceremony.pending(CEREMONY_AUTHENTICATION) is not None
        ceremony.cancel()
        e = UserCancelledError("user dismissed the authenticator prompt")
        if had_login:
            self._failed(descriptor.id, e)
        logger.info("Passkey ceremony cancelled by the user")
        raise e

    def _registration_user(self) -> str:
        session = self.current_session()
        if session is None:
            raise InvalidCredentialsError("sign in before registering a passkey")
        return session.user.username

    def begin_passkey_registration(self) -> PendingRegistration:
        """Start enrolling a passkey for the signed-in user."""
        descriptor = self._webauthn_descriptor()
        ceremony = self._require_webauthn(descriptor)
        self._require_verifier(descriptor)
        username = self._registration_user()
        return ceremony.register(username, exclude=self._credentials.list(username))

    def complete_passkey_registration(self, raw: Dict[str, Any]) -> Credential:
        descriptor = self._webauthn_descriptor()
        ceremony = self._require_webauthn(descriptor)
        verifier = self._require_verifier(descriptor)
        session = self.current_session()
        pending = ceremony.pending(CEREMONY_REGISTRATION)
        if session is None or (pending is not None and pending.username != session.user.username):
            ceremony.cancel(CEREMONY_REGISTRATION)
            raise InvalidCredentialsError("passkey registration must finish in the session that started it")
        credential = ceremony.complete_registration(raw)
        return self._enroll(credential, verifier)

    def register_passkey(self) -> Credential:
        """Enroll a passkey in-process through the injected platform."""
        descriptor = self._webauthn_descriptor()
        ceremony = self._require_webauthn(descriptor)
        verifier = self._require_verifier(descriptor)
        username = self._registration_user()
        credential = ceremony.perform_registration(username, exclude=self._credentials.list(username))
        return self._enroll(credential, verifier)

    def _enroll(self, credential: Credential, verifier: CredentialVerifier) -> Credential:
        verifier.verify_registration(credential)
        self._credentials.add(credential)
        logger.info("Registered passkey %s for %s", credential.id[:12], credential.owner_username)
        return credential

    def list_credentials(self, username: Optional[str] = None) -> List[Credential]:
        return self._credentials.list(username)

    def revoke_credential(self, credential_id: str) -> bool:
        removed = self._credentials.revoke(credential_id)
        if removed:
            logger.info("Revoked passkey %s", credential_id[:12])
        return removed

    # ---- OAuth2 ----

    def complete_oauth2(self, query_params: Mapping[str, Any]) -> AuthResult:
        """
        Finish an OAuth2 login from the callback query parameters.

        Rate-limited under the provider id of the pending authorization. The
        coordinator lock is released while the token exchange and user-info
        requests are in flight.
        """
        exchanger, fetcher = self._token_exchanger, self._userinfo_fetcher
        with self._lock:
            method = self._oauth2.pending_provider() or "oauth2"

            def begin() -> CallbackResult:
                if exchanger is None or fetcher is None:
                    raise MethodUnavailableError("no token-exchange collaborator configured")
                return self._oauth2.handle_callback(query_params)

            callback = self._guarded(method, begin)
            descriptor = self._oauth2.provider(callback.provider_id)

        try:
            tokens = exchanger.exchange(callback)  # type: ignore[union-attr]
            info = fetcher.fetch(descriptor, tokens)  # type: ignore[union-attr]
            result = self._oauth2.finalize(callback.provider_id, info)
            if not result.success or result.user is None:
                raise InvalidCredentialsError("provider did not return a usable identity")
        except Exception as e:
            with self._lock:
                self._failed(method, e)
            raise

        with self._lock:
            return self._succeed(callback.provider_id, result.user)

    # ---- session ----

    def logout(self) -> None:
        self._sessions.destroy()
        logger.info("Logged out")

    def current_session(self) -> Optional[Session]:
        return self._sessions.get()


def build_coordinator(
    settings: AuthSettings,
    *,
    backend: Optional[KeyValueStore] = None,
    platform: Optional[WebAuthnPlatform] = None,
    remote_platform: bool = False,
    clock: Callable[[], datetime] = utcnow,
) -> AuthCoordinator:
    """Wire a coordinator from settings: storage, HTTP collaborators, descriptors."""
    if backend is None:
        backend = LocalStore(path=settings.state_path) if settings.state_path else LocalStore()
    ex = settings.exchange
    coordinator = AuthCoordinator(
        backend,
        session_config=settings.session,
        platform=platform,
        verifier=(
            HttpCredentialVerifier(ex.credential_verifier_url, timeout=ex.timeout_seconds)
            if ex.credential_verifier_url
            else None
        ),
        token_exchanger=(
            HttpTokenExchanger(ex.token_exchange_url, timeout=ex.timeout_seconds) if ex.token_exchange_url else None
        ),
        userinfo_fetcher=HttpUserInfoFetcher(timeout=ex.timeout_seconds),
        public_base_url=settings.public_base_url,
        remote_platform=remote_platform,
        clock=clock,
    )
    coordinator.configure(
        settings.descriptors(),
        settings.security.rate_limit,
        default_method=settings.default_method,
    )
    return coordinator
