from __future__ import annotations

import base64
import hmac
import os


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def random_hex(nbytes: int = 32) -> str:
    return os.urandom(nbytes).hex()


def constant_time_equals(a: str | None, b: str | None) -> bool:
    """Compare two secrets without leaking where they differ. None never matches."""
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
