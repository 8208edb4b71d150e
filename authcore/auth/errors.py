"""
Typed authentication errors.

The UI renders user-facing text from `kind`, never from the message string, so
messages may carry internal detail for logs without leaking it to users.
"""

from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """Base class for every error the auth core raises."""

    kind = "auth_error"
    recoverable = True
    # Security-relevant failures must not be retried automatically by the UI.
    security_relevant = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)


class ConfigError(AuthError):
    kind = "config_error"
    recoverable = False


class RateLimitedError(AuthError):
    kind = "rate_limited"

    def __init__(self, message: str = "", *, retry_after: Optional[int] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class InvalidCredentialsError(AuthError):
    kind = "invalid_credentials"


class MethodUnavailableError(AuthError):
    kind = "method_unavailable"

    def __init__(self, message: str = "", *, fallback: Optional[str] = None) -> None:
        super().__init__(message)
        # Configured method the UI should offer instead, if any.
        self.fallback = fallback


# ---- WebAuthn ceremony errors ----


class CeremonyExpiredError(AuthError):
    kind = "ceremony_expired"


class CeremonyInProgressError(AuthError):
    kind = "ceremony_in_progress"


class UserCancelledError(AuthError):
    kind = "user_cancelled"


class ChallengeMismatchError(AuthError):
    kind = "challenge_mismatch"


class NoCredentialsError(AuthError):
    kind = "no_credentials"


# ---- OAuth2 errors ----


class CsrfMismatchError(AuthError):
    kind = "csrf_mismatch"
    security_relevant = True


class ProviderError(AuthError):
    kind = "provider_error"
    security_relevant = True

    def __init__(self, code: str, description: Optional[str] = None) -> None:
        super().__init__(f"{code}: {description}" if description else code)
        self.code = code
        self.description = description


# ---- External collaborator errors ----


class VerificationError(AuthError):
    """The external credential verifier rejected a registration or assertion."""

    kind = "verification_failed"


class TokenExchangeError(AuthError):
    """The token-exchange broker or user-info endpoint failed."""

    kind = "token_exchange_failed"
