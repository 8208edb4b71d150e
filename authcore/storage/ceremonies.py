from __future__ import annotations

import json
import logging
from typing import Optional

from authcore.auth.models import PendingCeremony
from authcore.storage.base import KeyValueStore

logger = logging.getLogger(__name__)


class CeremonyStore:
    """
    One pending-ceremony slot per kind, persisted in a KeyValueStore.

    Each strategy gets its own instance with its own `namespace`, so WebAuthn and
    OAuth2 state never share keys.
    """

    def __init__(self, backend: KeyValueStore, namespace: str) -> None:
        self._backend = backend
        self._namespace = namespace

    def _key(self, kind: str) -> str:
        return f"{self._namespace}:pending:{kind}"

    def get(self, kind: str) -> Optional[PendingCeremony]:
        raw = self._backend.get(self._key(kind))
        if not raw:
            return None
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("pending ceremony is not an object")
            pending = PendingCeremony.from_dict(data)
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding corrupt pending ceremony (%s)", kind)
            self.discard(kind)
            return None
        if pending.kind != kind:
            self.discard(kind)
            return None
        return pending

    def put(self, pending: PendingCeremony) -> None:
        self._backend.set(self._key(pending.kind), json.dumps(pending.to_dict(), sort_keys=True))

    def take(self, kind: str) -> Optional[PendingCeremony]:
        """Return and remove the pending ceremony (single use)."""
        pending = self.get(kind)
        self.discard(kind)
        return pending

    def discard(self, kind: str) -> None:
        self._backend.delete(self._key(kind))
