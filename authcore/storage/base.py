from __future__ import annotations

from typing import Optional, Protocol


class KeyValueStore(Protocol):
    """
    Minimal durable text storage (a localStorage equivalent).

    Values are opaque strings; callers own their own serialization.
    """

    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent."""

    def set(self, key: str, value: str) -> None:
        """Store `value` under `key`, replacing any previous value."""

    def delete(self, key: str) -> None:
        """Remove `key`. Removing a missing key is not an error."""
