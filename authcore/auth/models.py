from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

CEREMONY_REGISTRATION = "webauthn.registration"
CEREMONY_AUTHENTICATION = "webauthn.authentication"
CEREMONY_OAUTH2 = "oauth2"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(value: Any) -> datetime:
    dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class AuthUser:
    """Authenticated user (from any method)."""

    username: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    picture: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "displayName": self.display_name or self.username,
            "email": self.email,
            "picture": self.picture,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthUser":
        username = str(data.get("username") or "").strip()
        if not username:
            raise ValueError("user record missing username")
        return cls(
            username=username,
            display_name=str(data.get("displayName") or "") or None,
            email=str(data.get("email") or "") or None,
            picture=str(data.get("picture") or "") or None,
        )


@dataclass(frozen=True)
class LocalCredentials:
    username: str
    password: str


@dataclass(frozen=True)
class Session:
    """The single active local session."""

    user: AuthUser
    method: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_record(self) -> Dict[str, Any]:
        return {
            "user": self.user.to_dict(),
            "method": self.method,
            "issuedAt": self.issued_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Session":
        user = data.get("user")
        if not isinstance(user, dict):
            raise ValueError("session record missing user")
        return cls(
            user=AuthUser.from_dict(user),
            method=str(data.get("method") or ""),
            issued_at=_dt(data["issuedAt"]),
            expires_at=_dt(data["expiresAt"]),
        )


@dataclass(frozen=True)
class Credential:
    """
    A registered WebAuthn authenticator reference.

    Only public artifacts are kept here. `public_key_handle_ref` is opaque: the
    verification service that owns the key material decides what it means.
    """

    id: str
    public_key_handle_ref: str
    owner_username: str
    created_at: datetime
    attestation_object: str = ""
    client_data_json: str = ""
    transports: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "publicKeyHandleRef": self.public_key_handle_ref,
            "ownerUsername": self.owner_username,
            "createdAt": self.created_at.isoformat(),
            "attestationObject": self.attestation_object,
            "clientDataJSON": self.client_data_json,
            "transports": list(self.transports),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        return cls(
            id=str(data["id"]),
            public_key_handle_ref=str(data.get("publicKeyHandleRef") or ""),
            owner_username=str(data["ownerUsername"]),
            created_at=_dt(data["createdAt"]),
            attestation_object=str(data.get("attestationObject") or ""),
            client_data_json=str(data.get("clientDataJSON") or ""),
            transports=tuple(str(t) for t in (data.get("transports") or [])),
        )


@dataclass(frozen=True)
class PendingCeremony:
    """An in-flight WebAuthn ceremony or OAuth2 authorization."""

    kind: str
    challenge: str  # base64url challenge (WebAuthn) or CSRF state (OAuth2)
    created_at: datetime
    expires_at: datetime
    # OAuth2 only
    code_verifier: Optional[str] = None
    provider_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    # WebAuthn only
    username: Optional[str] = None
    allowed_credential_ids: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("pending ceremony must expire after it is created")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "challenge": self.challenge,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "codeVerifier": self.code_verifier,
            "providerId": self.provider_id,
            "redirectUri": self.redirect_uri,
            "username": self.username,
            "allowedCredentialIds": list(self.allowed_credential_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingCeremony":
        return cls(
            kind=str(data["kind"]),
            challenge=str(data["challenge"]),
            created_at=_dt(data["createdAt"]),
            expires_at=_dt(data["expiresAt"]),
            code_verifier=data.get("codeVerifier"),
            provider_id=data.get("providerId"),
            redirect_uri=data.get("redirectUri"),
            username=data.get("username"),
            allowed_credential_ids=tuple(str(x) for x in (data.get("allowedCredentialIds") or [])),
        )


@dataclass
class RateLimitEntry:
    """Failure counter for one method inside one window."""

    method: str
    count: int
    window_start: datetime


@dataclass(frozen=True)
class MethodSummary:
    id: str
    name: str
    kind: str
    icon: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "kind": self.kind, "icon": self.icon}


@dataclass(frozen=True)
class RedirectInstruction:
    """Where to send the user agent to start an OAuth2 authorization."""

    provider_id: str
    url: str
    expires_at: datetime


@dataclass(frozen=True)
class AuthResult:
    success: bool
    method: str
    user: Optional[AuthUser] = None
    redirect: Optional[RedirectInstruction] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "method": self.method}
        if self.user is not None:
            out["user"] = self.user.to_dict()
        if self.redirect is not None:
            out["redirect"] = self.redirect.url
        return out


@dataclass(frozen=True)
class AssertionOutcome:
    """
    Binding-checked WebAuthn assertion, ready for the external verifier.

    Signature trust is NOT established here; only challenge/credential binding.
    """

    credential_id: str
    authenticator_data: str
    client_data_json: str
    signature: str
    user_handle: Optional[str] = None


@dataclass(frozen=True)
class CallbackResult:
    """A CSRF-checked OAuth2 callback, handed to the token-exchange collaborator."""

    provider_id: str
    code: str
    code_verifier: str
    redirect_uri: str


@dataclass(frozen=True)
class FinalizeResult:
    success: bool
    user: Optional[AuthUser]


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    scope: Optional[str] = None
