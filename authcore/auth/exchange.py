"""
External collaborators: token exchange, user-info, credential verification.

The auth core only defines these contracts. The HTTP adapters here call a backend
that holds the secrets (OAuth2 client secret, WebAuthn public keys); nothing in this
module ever sends or receives a client secret.

No retries: one attempt per call with a timeout. Callers see a typed error and the
user restarts the flow.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import requests

from authcore.auth.config import OAuth2Descriptor
from authcore.auth.errors import TokenExchangeError, VerificationError
from authcore.auth.models import AssertionOutcome, CallbackResult, Credential, TokenSet

logger = logging.getLogger(__name__)


class TokenExchanger(Protocol):
    def exchange(self, callback: CallbackResult) -> TokenSet:
        """Trade `code` + `code_verifier` for tokens. Must run where the client secret lives."""


class UserInfoFetcher(Protocol):
    def fetch(self, descriptor: OAuth2Descriptor, tokens: TokenSet) -> Dict[str, Any]:
        """Return the provider's user-info document for the token holder."""


class CredentialVerifier(Protocol):
    def verify_registration(self, credential: Credential) -> None:
        """Raise VerificationError unless the attestation is acceptable."""

    def verify_assertion(self, outcome: AssertionOutcome, credential: Credential) -> None:
        """Raise VerificationError unless the assertion signature verifies."""


def _json_object(r: requests.Response, error: type[Exception], what: str) -> Dict[str, Any]:
    try:
        data = r.json()
    except ValueError as e:
        raise error(f"Invalid {what} response") from e
    if not isinstance(data, dict):
        raise error(f"Invalid {what} response")
    return data


class HttpTokenExchanger:
    """Posts the callback to a token-exchange broker."""

    def __init__(self, url: str, *, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self._url = url
        self._timeout = timeout
        self._http = session or requests.Session()

    def exchange(self, callback: CallbackResult) -> TokenSet:
        payload = {
            "providerId": callback.provider_id,
            "code": callback.code,
            "codeVerifier": callback.code_verifier,
            "redirectUri": callback.redirect_uri,
        }
        try:
            r = self._http.post(self._url, json=payload, timeout=self._timeout)
        except requests.RequestException as e:
            logger.warning("Token exchange request failed for %s: %s", callback.provider_id, type(e).__name__)
            raise TokenExchangeError("Token exchange unreachable") from e
        if r.status_code >= 400:
            # Avoid leaking sensitive info; include minimal context.
            raise TokenExchangeError(f"Token exchange failed (status={r.status_code})")
        data = _json_object(r, TokenExchangeError, "token exchange")
        access_token = str(data.get("accessToken") or data.get("access_token") or "").strip()
        if not access_token:
            raise TokenExchangeError("Token exchange response missing accessToken")
        expires_in = data.get("expiresIn", data.get("expires_in"))
        scope = data.get("scope")
        try:
            if scope is not None and not isinstance(scope, str):
                raise TypeError("scope must be a string")
            return TokenSet(
                access_token=access_token,
                token_type=str(data.get("tokenType") or data.get("token_type") or "Bearer"),
                expires_in=int(expires_in) if expires_in is not None else None,
                scope=scope,
            )
        except (TypeError, ValueError) as e:
            raise TokenExchangeError("Invalid token exchange response") from e


class HttpUserInfoFetcher:
    """Bearer GET against the provider's user-info endpoint."""

    def __init__(self, *, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self._timeout = timeout
        self._http = session or requests.Session()

    def fetch(self, descriptor: OAuth2Descriptor, tokens: TokenSet) -> Dict[str, Any]:
        if not descriptor.userinfo_url:
            raise TokenExchangeError(f"provider {descriptor.id!r} has no userinfoUrl")
        headers = {
            "Authorization": f"{tokens.token_type} {tokens.access_token}",
            "Accept": "application/json",
        }
        try:
            r = self._http.get(descriptor.userinfo_url, headers=headers, timeout=self._timeout)
        except requests.RequestException as e:
            raise TokenExchangeError("User-info endpoint unreachable") from e
        if r.status_code >= 400:
            raise TokenExchangeError(f"User-info request failed (status={r.status_code})")
        return _json_object(r, TokenExchangeError, "user-info")


class HttpCredentialVerifier:
    """Delegates attestation/assertion verification to a backend verifier."""

    def __init__(self, base_url: str, *, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._http = session or requests.Session()

    def _post(self, path: str, payload: Dict[str, Any]) -> None:
        try:
            r = self._http.post(f"{self._base}{path}", json=payload, timeout=self._timeout)
        except requests.RequestException as e:
            raise VerificationError("Credential verifier unreachable") from e
        if r.status_code >= 400:
            raise VerificationError(f"Credential verification failed (status={r.status_code})")
        data = _json_object(r, VerificationError, "verifier")
        if data.get("verified") is not True:
            raise VerificationError("Credential verifier rejected the ceremony")

    def verify_registration(self, credential: Credential) -> None:
        self._post("/registration", credential.to_dict())

    def verify_assertion(self, outcome: AssertionOutcome, credential: Credential) -> None:
        self._post(
            "/assertion",
            {
                "credentialId": outcome.credential_id,
                "publicKeyHandleRef": credential.public_key_handle_ref,
                "ownerUsername": credential.owner_username,
                "authenticatorData": outcome.authenticator_data,
                "clientDataJSON": outcome.client_data_json,
                "signature": outcome.signature,
                "userHandle": outcome.user_handle,
            },
        )
