from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlencode

from authcore.auth.config import OAuth2Descriptor
from authcore.auth.errors import (
    CeremonyExpiredError,
    ConfigError,
    CsrfMismatchError,
    MethodUnavailableError,
    ProviderError,
)
from authcore.auth.models import (
    CEREMONY_OAUTH2,
    AuthUser,
    CallbackResult,
    FinalizeResult,
    PendingCeremony,
    RedirectInstruction,
    utcnow,
)
from authcore.auth.util import b64url, constant_time_equals, random_hex, random_token
from authcore.storage.ceremonies import CeremonyStore

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/auth/callback"
STATE_TTL = timedelta(minutes=10)
STATE_BYTES = 32  # 256 bits, hex encoded
VERIFIER_BYTES = 64  # 86 base64url chars, inside RFC 7636's 43..128


@dataclass(frozen=True)
class ProviderSummary:
    id: str
    name: str
    icon: Optional[str] = None


def pkce_challenge(verifier: str) -> str:
    """
    Generate PKCE challenge from verifier using SHA256.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return b64url(digest)


def new_pkce_pair() -> tuple[str, str]:
    verifier = random_token(VERIFIER_BYTES)
    return verifier, pkce_challenge(verifier)


def build_authorize_url(
    descriptor: OAuth2Descriptor,
    *,
    redirect_uri: str,
    state: str,
    code_challenge: str,
) -> str:
    """
    Build authorization URL for an OAuth2 provider.
    Always uses PKCE (S256).
    """
    params: Dict[str, str] = {
        "client_id": descriptor.client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": descriptor.scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    if descriptor.response_mode:
        # e.g. Apple requires form_post when requesting name/email scopes.
        params["response_mode"] = descriptor.response_mode
    for k, v in descriptor.extra_params.items():
        params.setdefault(k, v)

    sep = "&" if "?" in descriptor.authorize_url else "?"
    return f"{descriptor.authorize_url}{sep}{urlencode(params)}"


def _first(params: Mapping[str, Any], key: str) -> Optional[str]:
    value = params.get(key)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return None
    return str(value)


class OAuth2Flow:
    """
    Authorization-code-with-PKCE, split into two calls around the redirect.

    `begin_authorization` persists `{state, code_verifier, provider_id}` in the
    ceremony store; `handle_callback` validates the returning query parameters
    against it. Only one authorization may be in flight: starting a new one
    supersedes the previous state and verifier.

    The code-for-token exchange is not done here. It needs the provider client
    secret, which this class never sees.
    """

    def __init__(
        self,
        descriptors: Sequence[OAuth2Descriptor],
        store: CeremonyStore,
        *,
        public_base_url: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._providers: Dict[str, OAuth2Descriptor] = {}
        for d in descriptors:
            if d.id in self._providers:
                raise ConfigError(f"duplicate oauth2 provider id {d.id!r}")
            self._providers[d.id] = d
        self._store = store
        self._public_base_url = (public_base_url or "").strip().rstrip("/") or None
        self._clock = clock

    def list_providers(self) -> List[ProviderSummary]:
        return [
            ProviderSummary(id=d.id, name=d.name, icon=d.icon) for d in self._providers.values() if d.enabled
        ]

    def provider(self, provider_id: str) -> OAuth2Descriptor:
        d = self._providers.get(provider_id)
        if d is None or not d.enabled:
            raise MethodUnavailableError(f"oauth2 provider {provider_id!r} is not available")
        return d

    def redirect_uri_for(self, descriptor: OAuth2Descriptor) -> str:
        if descriptor.redirect_uri:
            return descriptor.redirect_uri
        if not self._public_base_url:
            raise ConfigError(f"provider {descriptor.id!r} needs redirectUri or a public base URL")
        return f"{self._public_base_url}{CALLBACK_PATH}"

    def begin_authorization(self, provider_id: str) -> RedirectInstruction:
        descriptor = self.provider(provider_id)
        redirect_uri = self.redirect_uri_for(descriptor)

        state = random_hex(STATE_BYTES)
        verifier, challenge = new_pkce_pair()
        now = self._clock()

        if self._store.get(CEREMONY_OAUTH2) is not None:
            logger.info("Superseding pending OAuth2 authorization with a new one for %s", provider_id)
        pending = PendingCeremony(
            kind=CEREMONY_OAUTH2,
            challenge=state,
            created_at=now,
            expires_at=now + STATE_TTL,
            code_verifier=verifier,
            provider_id=provider_id,
            redirect_uri=redirect_uri,
        )
        self._store.put(pending)

        url = build_authorize_url(descriptor, redirect_uri=redirect_uri, state=state, code_challenge=challenge)
        return RedirectInstruction(provider_id=provider_id, url=url, expires_at=pending.expires_at)

    def pending_provider(self) -> Optional[str]:
        pending = self._store.get(CEREMONY_OAUTH2)
        return pending.provider_id if pending is not None else None

    def handle_callback(self, query_params: Mapping[str, Any]) -> CallbackResult:
        """
        Validate the provider redirect.

        Order matters: a provider `error` wins outright; then the CSRF state is
        checked before anything else is trusted. The pending authorization is
        consumed by any terminal outcome so a callback cannot be replayed.
        """
        error = _first(query_params, "error")
        if error:
            self._store.discard(CEREMONY_OAUTH2)
            raise ProviderError(error, _first(query_params, "error_description"))

        state = _first(query_params, "state")
        pending = self._store.get(CEREMONY_OAUTH2)
        if pending is None or not constant_time_equals(state, pending.challenge):
            self._store.discard(CEREMONY_OAUTH2)
            raise CsrfMismatchError("state parameter does not match a pending authorization")

        self._store.discard(CEREMONY_OAUTH2)
        if pending.is_expired(self._clock()):
            raise CeremonyExpiredError("authorization request expired")

        code = _first(query_params, "code")
        if not code:
            raise ProviderError("invalid_request", "callback is missing the authorization code")

        return CallbackResult(
            provider_id=str(pending.provider_id),
            code=code,
            code_verifier=str(pending.code_verifier),
            redirect_uri=str(pending.redirect_uri),
        )

    def finalize(self, provider_id: str, user_info: Mapping[str, Any]) -> FinalizeResult:
        """
        Map provider user-info onto an AuthUser. Pure: no I/O, no state.
        """
        username = ""
        for key in ("email", "preferred_username", "login", "sub", "id"):
            value = user_info.get(key)
            if value is not None and str(value).strip():
                username = str(value).strip()
                break
        if not username:
            return FinalizeResult(success=False, user=None)
        if user_info.get("email_verified") is False:
            return FinalizeResult(success=False, user=None)

        name = str(user_info.get("name") or "").strip() or None
        email = str(user_info.get("email") or "").strip().lower() or None
        picture = str(user_info.get("picture") or user_info.get("avatar_url") or "").strip() or None
        return FinalizeResult(
            success=True,
            user=AuthUser(username=username, display_name=name or username, email=email, picture=picture),
        )
