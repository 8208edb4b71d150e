from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from itsdangerous import BadSignature, URLSafeSerializer

from authcore.auth.config import SessionConfig
from authcore.auth.models import AuthUser, Session, utcnow
from authcore.auth.util import random_token
from authcore.storage.base import KeyValueStore

logger = logging.getLogger(__name__)

SESSION_SALT = "authcore-session-v1"


class SessionStore:
    """
    Owns the single local session record.

    The record is signed so a hand-edited state file cannot mint a session. Expiry is
    enforced lazily: reading an expired (or tampered) record destroys it.
    """

    def __init__(
        self,
        backend: KeyValueStore,
        config: Optional[SessionConfig] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._backend = backend
        self._config = config or SessionConfig()
        self._clock = clock
        secret = self._config.secret
        if not secret:
            # Sessions still work, but will not survive a restart (or a second CLI run).
            logger.warning("No session secret configured; using an ephemeral signing key")
            secret = random_token(32)
        self._serializer = URLSafeSerializer(secret_key=secret, salt=SESSION_SALT)

    @property
    def key(self) -> str:
        return self._config.key

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._config.ttl_seconds)

    def create(self, user: AuthUser, method: str) -> Session:
        """Write a fresh session, replacing any existing one."""
        now = self._clock()
        session = Session(user=user, method=method, issued_at=now, expires_at=now + self.ttl)
        raw = json.dumps(session.to_record(), separators=(",", ":"), sort_keys=True)
        self._backend.set(self.key, self._serializer.dumps(raw))
        return session

    def get(self) -> Optional[Session]:
        value = self._backend.get(self.key)
        if not value:
            return None
        try:
            raw = self._serializer.loads(value)
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("session record is not an object")
            session = Session.from_record(data)
        except (BadSignature, ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable session record")
            self.destroy()
            return None
        if session.is_expired(self._clock()):
            logger.info("Session for %s expired; removing", session.user.username)
            self.destroy()
            return None
        return session

    def is_valid(self) -> bool:
        return self.get() is not None

    def destroy(self) -> None:
        self._backend.delete(self.key)
