"""
Pytest config.

Local imports like `import authcore` rely on the repo root being on sys.path. When
invoking a global `pytest` entrypoint without an editable install that doesn't happen
reliably during collection, so we pin the behavior here.

Shared fakes live here too: a manual clock, an in-memory store, and a WebAuthn
platform that answers ceremonies the way a browser would (minus real signatures).
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from webauthn.helpers import bytes_to_base64url  # noqa: E402

from authcore.auth.webauthn import PlatformError  # noqa: E402
from authcore.storage.memory_store import MemoryStore  # noqa: E402

ORIGIN = "http://localhost:8080"


class ManualClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def client_data(ceremony_type: str, challenge: str, origin: str = ORIGIN) -> str:
    payload = {"type": ceremony_type, "challenge": challenge, "origin": origin, "crossOrigin": False}
    return bytes_to_base64url(json.dumps(payload).encode("utf-8"))


class FakePlatform:
    """Stands in for navigator.credentials."""

    def __init__(self) -> None:
        self.available = True
        self.uvpa = True
        self.error: Optional[str] = None
        self.credential_id = "Y3JlZC0x"
        self.origin = ORIGIN
        self.calls: List[str] = []

    def is_available(self) -> bool:
        return self.available

    def is_user_verifying_platform_authenticator_available(self) -> bool:
        return self.uvpa

    def attestation(self, options: Dict[str, Any], *, challenge: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": self.credential_id,
            "rawId": self.credential_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": client_data("webauthn.create", challenge or options["challenge"], self.origin),
                "attestationObject": "o2NmbXRkbm9uZWdhdHRTdG10oA",
                "transports": ["internal"],
            },
        }

    def assertion(self, options: Dict[str, Any], *, credential_id: Optional[str] = None) -> Dict[str, Any]:
        cid = credential_id or options["allowCredentials"][0]["id"]
        return {
            "id": cid,
            "rawId": cid,
            "type": "public-key",
            "response": {
                "authenticatorData": "SZYN5YgOjGh0NBcPZHZgW4_krrmihjLHmVzzuoMdl2MFAAAAAQ",
                "clientDataJSON": client_data("webauthn.get", options["challenge"], self.origin),
                "signature": "MEUCIQDsig",
                "userHandle": None,
            },
        }

    def create(self, options: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append("create")
        if self.error:
            raise PlatformError(self.error)
        return self.attestation(options)

    def get(self, options: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append("get")
        if self.error:
            raise PlatformError(self.error)
        return self.assertion(options)


class FakeVerifier:
    def __init__(self) -> None:
        self.reject = False
        self.registrations: List[Any] = []
        self.assertions: List[Any] = []

    def verify_registration(self, credential) -> None:  # type: ignore[no-untyped-def]
        from authcore.auth.errors import VerificationError

        if self.reject:
            raise VerificationError("rejected")
        self.registrations.append(credential)

    def verify_assertion(self, outcome, credential) -> None:  # type: ignore[no-untyped-def]
        from authcore.auth.errors import VerificationError

        if self.reject:
            raise VerificationError("rejected")
        self.assertions.append((outcome, credential))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture(autouse=True)
def _clear_config_cache() -> None:
    from authcore.auth.config import load_auth_config

    load_auth_config.cache_clear()
