from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional, Union

import bcrypt

from authcore.auth.config import LocalDescriptor, LocalUserEntry
from authcore.auth.errors import InvalidCredentialsError
from authcore.auth.models import AuthUser, LocalCredentials

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    # Checked when the username is unknown so both paths cost one bcrypt round.
    return hash_password("authcore-dummy-password")


def hash_password(password: str, *, rounds: int = 12) -> str:
    """
    Hash password with bcrypt (cost factor 12 by default).

    Args:
        password: Plain text password
        rounds: bcrypt cost factor

    Returns:
        Bcrypt hash string
    """
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash with constant-time comparison.

    Args:
        password: Plain text password
        password_hash: Bcrypt hash

    Returns:
        True if password matches, False otherwise
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Invalid hash format
        return False


def coerce_credentials(
    credentials: Union[LocalCredentials, Mapping[str, Any], None],
) -> Optional[LocalCredentials]:
    if credentials is None:
        return None
    if isinstance(credentials, LocalCredentials):
        return credentials
    username = str(credentials.get("username") or "").strip()
    password = str(credentials.get("password") or "")
    return LocalCredentials(username=username, password=password)


class LocalAuthenticator:
    """Username/password check against the users configured on the local descriptor."""

    def __init__(self, descriptor: LocalDescriptor) -> None:
        self._users: Dict[str, LocalUserEntry] = {u.username: u for u in descriptor.users}
        if not self._users:
            logger.warning("Local auth is enabled but no users are configured")

    def authenticate(self, credentials: Union[LocalCredentials, Mapping[str, Any], None]) -> AuthUser:
        """
        Authenticate local user with username/password.

        Raises:
            InvalidCredentialsError: missing fields, unknown user or wrong password
                (indistinguishable to the caller)
        """
        creds = coerce_credentials(credentials)
        if creds is None or not creds.username or not creds.password:
            raise InvalidCredentialsError("username and password required")

        entry = self._users.get(creds.username)
        if entry is None:
            verify_password(creds.password, _dummy_hash())
            raise InvalidCredentialsError("invalid username or password")

        if not verify_password(creds.password, entry.password_hash):
            raise InvalidCredentialsError("invalid username or password")

        return AuthUser(username=entry.username, display_name=entry.display_name or entry.username)
