"""
WebAuthn (FIDO2) ceremonies: the client-side half.

This module issues single-use challenges, builds creation/request options, and
checks that a ceremony result is bound to the challenge it answers. It does NOT
verify attestation statements or assertion signatures: that needs the credential
public key and belongs to the external verifier (see `authcore.auth.exchange`).

Binary fields are base64url strings everywhere outside this module.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url, parse_client_data_json
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import InvalidJSONStructure
from webauthn.helpers.structs import ClientDataType, ResidentKeyRequirement

from authcore.auth.config import WebAuthnDescriptor
from authcore.auth.errors import (
    CeremonyExpiredError,
    CeremonyInProgressError,
    ChallengeMismatchError,
    InvalidCredentialsError,
    MethodUnavailableError,
    NoCredentialsError,
    UserCancelledError,
    VerificationError,
)
from authcore.auth.models import (
    CEREMONY_AUTHENTICATION,
    CEREMONY_REGISTRATION,
    AssertionOutcome,
    Credential,
    PendingCeremony,
    utcnow,
)
from authcore.auth.util import random_token
from authcore.storage.base import KeyValueStore
from authcore.storage.ceremonies import CeremonyStore

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32
MAX_CEREMONY_TTL = timedelta(minutes=5)
DEFAULT_TRANSPORTS = ["internal", "hybrid", "usb", "nfc", "ble"]

# ES256 first: every platform authenticator supports it.
SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]

# DOMException names reported by navigator.credentials.create()/get().
_CANCEL_ERRORS = {"NotAllowedError", "AbortError"}
_UNSUPPORTED_ERRORS = {"NotSupportedError", "SecurityError"}


class PlatformError(Exception):
    """Raised by a WebAuthnPlatform; `name` mirrors the browser DOMException name."""

    def __init__(self, name: str, message: str = "") -> None:
        super().__init__(message or name)
        self.name = name


class WebAuthnPlatform(Protocol):
    """The authenticator-facing side (a browser's navigator.credentials, or a test double)."""

    def is_available(self) -> bool: ...

    def is_user_verifying_platform_authenticator_available(self) -> bool: ...

    def create(self, options: Dict[str, Any]) -> Dict[str, Any]: ...

    def get(self, options: Dict[str, Any]) -> Dict[str, Any]: ...


# ---- Wire models (camelCase on the wire) ----


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class RelyingParty(_Wire):
    id: str
    name: str


class UserEntity(_Wire):
    id: str
    name: str
    display_name: str


class CredentialParameter(_Wire):
    type: str = "public-key"
    alg: int


class CredentialDescriptor(_Wire):
    type: str = "public-key"
    id: str
    transports: List[str] = Field(default_factory=list)


class AuthenticatorSelection(_Wire):
    authenticator_attachment: Optional[str] = None
    require_resident_key: bool = False
    resident_key: str = ResidentKeyRequirement.DISCOURAGED.value
    user_verification: str = "preferred"


class CreationOptions(_Wire):
    rp: RelyingParty
    user: UserEntity
    challenge: str
    pub_key_cred_params: List[CredentialParameter]
    authenticator_selection: AuthenticatorSelection
    timeout: int
    attestation: str = "none"
    exclude_credentials: List[CredentialDescriptor] = Field(default_factory=list)


class RequestOptions(_Wire):
    challenge: str
    rp_id: str
    allow_credentials: List[CredentialDescriptor]
    timeout: int
    user_verification: str = "preferred"


class PendingRegistration(_Wire):
    options: CreationOptions
    expires_at: datetime


class PendingAssertion(_Wire):
    options: RequestOptions
    expires_at: datetime


class AttestationResponse(_Wire):
    client_data_json: str = Field(alias="clientDataJSON")
    attestation_object: str
    transports: List[str] = Field(default_factory=list)


class RegistrationResult(_Wire):
    id: str
    raw_id: Optional[str] = None
    type: str = "public-key"
    response: AttestationResponse


class AssertionResponse(_Wire):
    authenticator_data: str
    client_data_json: str = Field(alias="clientDataJSON")
    signature: str
    user_handle: Optional[str] = None


class AssertionResult(_Wire):
    id: str
    raw_id: Optional[str] = None
    type: str = "public-key"
    response: AssertionResponse


# ---- Credential references ----


class CredentialRegistry:
    """
    Opaque references to registered authenticators, kept so an assertion request
    can list `allowCredentials`. The key material itself lives with the verifier.
    """

    def __init__(self, backend: KeyValueStore, namespace: str = "webauthn") -> None:
        self._backend = backend
        self._key = f"{namespace}:credentials"

    def _load(self) -> List[Credential]:
        raw = self._backend.get(self._key)
        if not raw:
            return []
        try:
            items = json.loads(raw)
            return [Credential.from_dict(x) for x in items if isinstance(x, dict)]
        except (ValueError, KeyError, TypeError):
            logger.warning("Credential registry is unreadable; treating as empty")
            return []

    def _save(self, creds: Sequence[Credential]) -> None:
        self._backend.set(self._key, json.dumps([c.to_dict() for c in creds], sort_keys=True))

    def list(self, username: Optional[str] = None) -> List[Credential]:
        creds = self._load()
        if username is not None:
            creds = [c for c in creds if c.owner_username == username]
        return creds

    def get(self, credential_id: str) -> Optional[Credential]:
        for c in self._load():
            if c.id == credential_id:
                return c
        return None

    def add(self, credential: Credential) -> None:
        creds = self._load()
        if any(c.id == credential.id for c in creds):
            raise VerificationError("credential id already registered")
        creds.append(credential)
        self._save(creds)

    def revoke(self, credential_id: str) -> bool:
        creds = self._load()
        kept = [c for c in creds if c.id != credential_id]
        if len(kept) == len(creds):
            return False
        self._save(kept)
        return True


# ---- Ceremony ----


class WebAuthnCeremony:
    """
    Drives registration (create) and authentication (get) ceremonies.

    At most one pending ceremony of each kind exists; it is consumed by the first
    completion attempt whatever the outcome.
    """

    def __init__(
        self,
        descriptor: WebAuthnDescriptor,
        store: CeremonyStore,
        platform: Optional[WebAuthnPlatform] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._descriptor = descriptor
        self._store = store
        self._platform = platform
        self._clock = clock

    @property
    def descriptor(self) -> WebAuthnDescriptor:
        return self._descriptor

    def is_supported(self) -> bool:
        if self._platform is None:
            return False
        try:
            return bool(self._platform.is_available())
        except Exception as e:
            logger.warning("WebAuthn capability probe failed: %s", str(e))
            return False

    def is_platform_authenticator_available(self) -> bool:
        if not self.is_supported():
            return False
        try:
            return bool(self._platform.is_user_verifying_platform_authenticator_available())  # type: ignore[union-attr]
        except Exception as e:
            logger.warning("Platform authenticator probe failed: %s", str(e))
            return False

    def user_handle(self, username: str) -> str:
        """Stable, non-PII user handle: the same username always maps to the same handle."""
        digest = hashlib.sha256(f"{self._descriptor.rp_id}:{username}".encode("utf-8")).digest()
        return bytes_to_base64url(digest)

    def _ttl(self) -> timedelta:
        return min(timedelta(milliseconds=self._descriptor.timeout_ms), MAX_CEREMONY_TTL)

    def _timeout_ms(self) -> int:
        return int(self._ttl().total_seconds() * 1000)

    def _start(self, kind: str, **fields: Any) -> PendingCeremony:
        now = self._clock()
        existing = self._store.get(kind)
        if existing is not None:
            if not existing.is_expired(now):
                raise CeremonyInProgressError(f"a {kind} ceremony is already pending")
            self._store.discard(kind)
        pending = PendingCeremony(
            kind=kind,
            challenge=random_token(CHALLENGE_BYTES),
            created_at=now,
            expires_at=now + self._ttl(),
            **fields,
        )
        self._store.put(pending)
        return pending

    def pending(self, kind: str) -> Optional[PendingCeremony]:
        return self._store.get(kind)

    def cancel(self, kind: Optional[str] = None) -> None:
        """Discard the pending ceremony of `kind` (both kinds when None)."""
        kinds = [kind] if kind else [CEREMONY_REGISTRATION, CEREMONY_AUTHENTICATION]
        for k in kinds:
            self._store.discard(k)

    def _check_client_data(self, encoded: str, pending: PendingCeremony, expected_type: ClientDataType) -> None:
        try:
            client_data = parse_client_data_json(base64url_to_bytes(encoded))
        except (InvalidJSONStructure, ValueError, TypeError) as e:
            raise ChallengeMismatchError("unreadable clientDataJSON") from e
        if client_data.type != expected_type:
            raise ChallengeMismatchError("unexpected ceremony type in clientDataJSON")
        if not hmac.compare_digest(client_data.challenge, base64url_to_bytes(pending.challenge)):
            raise ChallengeMismatchError("challenge does not match the pending ceremony")
        origins = self._descriptor.origins
        if origins and client_data.origin not in origins:
            raise ChallengeMismatchError("origin not allowed")

    def _take_live(self, kind: str) -> PendingCeremony:
        pending = self._store.take(kind)
        if pending is None:
            raise ChallengeMismatchError(f"no {kind} ceremony is pending")
        if pending.is_expired(self._clock()):
            raise CeremonyExpiredError(f"{kind} ceremony expired")
        return pending

    # ---- registration ----

    def register(self, username: str, *, exclude: Sequence[Credential] = ()) -> PendingRegistration:
        username = (username or "").strip()
        if not username:
            raise InvalidCredentialsError("username required for registration")
        pending = self._start(CEREMONY_REGISTRATION, username=username)
        d = self._descriptor
        options = CreationOptions(
            rp=RelyingParty(id=d.rp_id, name=d.rp_name),
            user=UserEntity(id=self.user_handle(username), name=username, display_name=username),
            challenge=pending.challenge,
            pub_key_cred_params=[CredentialParameter(alg=int(alg)) for alg in SUPPORTED_ALGORITHMS],
            authenticator_selection=AuthenticatorSelection(
                authenticator_attachment=d.authenticator_attachment,
                require_resident_key=d.require_resident_key,
                resident_key=(
                    ResidentKeyRequirement.REQUIRED.value
                    if d.require_resident_key
                    else ResidentKeyRequirement.DISCOURAGED.value
                ),
                user_verification=d.user_verification,
            ),
            timeout=self._timeout_ms(),
            attestation=d.attestation,
            exclude_credentials=[
                CredentialDescriptor(id=c.id, transports=list(c.transports)) for c in exclude
            ],
        )
        logger.debug("Issued registration challenge for %s (expires %s)", username, pending.expires_at.isoformat())
        return PendingRegistration(options=options, expires_at=pending.expires_at)

    def complete_registration(self, raw: Dict[str, Any]) -> Credential:
        pending = self._take_live(CEREMONY_REGISTRATION)
        try:
            result = RegistrationResult.model_validate(raw)
        except ValidationError as e:
            raise ChallengeMismatchError("malformed registration result") from e
        self._check_client_data(result.response.client_data_json, pending, ClientDataType.WEBAUTHN_CREATE)
        return Credential(
            id=result.id,
            public_key_handle_ref=result.raw_id or result.id,
            owner_username=str(pending.username),
            created_at=self._clock(),
            attestation_object=result.response.attestation_object,
            client_data_json=result.response.client_data_json,
            transports=tuple(result.response.transports),
        )

    # ---- authentication ----

    def authenticate(self, allowed_credentials: Sequence[Credential]) -> PendingAssertion:
        if not allowed_credentials:
            raise NoCredentialsError("no credentials registered")
        pending = self._start(
            CEREMONY_AUTHENTICATION,
            allowed_credential_ids=tuple(c.id for c in allowed_credentials),
        )
        options = RequestOptions(
            challenge=pending.challenge,
            rp_id=self._descriptor.rp_id,
            allow_credentials=[
                CredentialDescriptor(id=c.id, transports=list(c.transports) or list(DEFAULT_TRANSPORTS))
                for c in allowed_credentials
            ],
            timeout=self._timeout_ms(),
            user_verification=self._descriptor.user_verification,
        )
        return PendingAssertion(options=options, expires_at=pending.expires_at)

    def complete_authentication(self, raw: Dict[str, Any]) -> AssertionOutcome:
        pending = self._take_live(CEREMONY_AUTHENTICATION)
        try:
            result = AssertionResult.model_validate(raw)
        except ValidationError as e:
            raise ChallengeMismatchError("malformed assertion result") from e
        if result.id not in pending.allowed_credential_ids:
            raise ChallengeMismatchError("assertion used a credential that was not offered")
        self._check_client_data(result.response.client_data_json, pending, ClientDataType.WEBAUTHN_GET)
        return AssertionOutcome(
            credential_id=result.id,
            authenticator_data=result.response.authenticator_data,
            client_data_json=result.response.client_data_json,
            signature=result.response.signature,
            user_handle=result.response.user_handle,
        )

    # ---- in-process platform driving ----

    def _call_platform(self, kind: str, call: Callable[[WebAuthnPlatform], Dict[str, Any]]) -> Dict[str, Any]:
        if self._platform is None:
            self._store.discard(kind)
            raise MethodUnavailableError("no WebAuthn platform available")
        try:
            return call(self._platform)
        except PlatformError as e:
            self._store.discard(kind)
            if e.name in _CANCEL_ERRORS:
                raise UserCancelledError("user dismissed the authenticator prompt") from e
            if e.name == "TimeoutError":
                raise CeremonyExpiredError("authenticator prompt timed out") from e
            if e.name in _UNSUPPORTED_ERRORS:
                raise MethodUnavailableError(f"platform rejected the ceremony ({e.name})") from e
            raise
        except Exception:
            self._store.discard(kind)
            raise

    def perform_registration(self, username: str, *, exclude: Sequence[Credential] = ()) -> Credential:
        if not self.is_supported():
            raise MethodUnavailableError("WebAuthn is not supported on this platform")
        pending = self.register(username, exclude=exclude)
        raw = self._call_platform(CEREMONY_REGISTRATION, lambda p: p.create(pending.options.as_dict()))
        return self.complete_registration(raw)

    def perform_authentication(self, allowed_credentials: Sequence[Credential]) -> AssertionOutcome:
        if not self.is_supported():
            raise MethodUnavailableError("WebAuthn is not supported on this platform")
        pending = self.authenticate(allowed_credentials)
        raw = self._call_platform(CEREMONY_AUTHENTICATION, lambda p: p.get(pending.options.as_dict()))
        return self.complete_authentication(raw)
