from __future__ import annotations

import pytest

from authcore.auth.config import LocalDescriptor, LocalUserEntry
from authcore.auth.errors import InvalidCredentialsError
from authcore.auth.local import LocalAuthenticator, hash_password, verify_password
from authcore.auth.models import LocalCredentials


@pytest.fixture(scope="module")
def alice_hash() -> str:
    return hash_password("correct horse", rounds=4)


@pytest.fixture
def authenticator(alice_hash: str) -> LocalAuthenticator:
    descriptor = LocalDescriptor(
        id="local",
        users=[LocalUserEntry(username="alice", password_hash=alice_hash, display_name="Alice")],
    )
    return LocalAuthenticator(descriptor)


def test_hash_and_verify_password(alice_hash: str) -> None:
    assert alice_hash.startswith("$2")
    assert verify_password("correct horse", alice_hash) is True
    assert verify_password("wrong", alice_hash) is False


def test_verify_password_with_malformed_hash_is_false() -> None:
    assert verify_password("anything", "not-a-bcrypt-hash") is False


def test_authenticate_success(authenticator: LocalAuthenticator) -> None:
    user = authenticator.authenticate({"username": "alice", "password": "correct horse"})
    assert user.username == "alice"
    assert user.display_name == "Alice"


def test_authenticate_accepts_credentials_object(authenticator: LocalAuthenticator) -> None:
    user = authenticator.authenticate(LocalCredentials(username="alice", password="correct horse"))
    assert user.username == "alice"


def test_wrong_password_is_rejected(authenticator: LocalAuthenticator) -> None:
    with pytest.raises(InvalidCredentialsError):
        authenticator.authenticate({"username": "alice", "password": "nope"})


def test_unknown_user_is_rejected(authenticator: LocalAuthenticator) -> None:
    with pytest.raises(InvalidCredentialsError):
        authenticator.authenticate({"username": "mallory", "password": "correct horse"})


@pytest.mark.parametrize(
    "credentials",
    [None, {}, {"username": "alice"}, {"password": "correct horse"}, {"username": "  ", "password": "x"}],
)
def test_missing_fields_are_rejected(authenticator: LocalAuthenticator, credentials) -> None:
    with pytest.raises(InvalidCredentialsError):
        authenticator.authenticate(credentials)
