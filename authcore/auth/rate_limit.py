from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from authcore.auth.config import RateLimitConfig
from authcore.auth.models import RateLimitEntry, _dt, utcnow
from authcore.storage.base import KeyValueStore
from authcore.storage.memory_store import MemoryStore

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Fixed-window failure counter keyed by authentication method.

    Only failures are counted. A method is denied once `max_attempts` failures have
    been recorded inside one window; the window starts at the first failure and the
    whole entry is discarded (not decremented) once it has elapsed.

    Entries live in a KeyValueStore so a durable backend keeps counting across
    separate CLI invocations.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        backend: Optional[KeyValueStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize rate limiter.

        Args:
            config: Policy (enabled, max_attempts, window_ms). Defaults to 5 failures / 15 minutes.
            backend: Where entries are kept (in-process memory when omitted)
            clock: Returns the current aware datetime (injectable for tests)
        """
        self._config = config or RateLimitConfig()
        self._backend = backend if backend is not None else MemoryStore()
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def _window(self) -> timedelta:
        return timedelta(milliseconds=self._config.window_ms)

    def _key(self, method: str) -> str:
        return f"ratelimit:{method}"

    def _expired(self, entry: RateLimitEntry, now: datetime) -> bool:
        return now - entry.window_start > self._window

    def entry(self, method: str) -> Optional[RateLimitEntry]:
        raw = self._backend.get(self._key(method))
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return RateLimitEntry(method=method, count=int(data["count"]), window_start=_dt(data["windowStart"]))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable rate-limit entry for method=%s", method)
            self._backend.delete(self._key(method))
            return None

    def _save(self, entry: RateLimitEntry) -> None:
        self._backend.set(
            self._key(entry.method),
            json.dumps({"count": entry.count, "windowStart": entry.window_start.isoformat()}),
        )

    def allow(self, method: str) -> bool:
        """
        Return True if another attempt for `method` may proceed.

        Does not count the attempt; callers report the outcome with
        `record_failure` or `reset`.
        """
        if not self._config.enabled:
            return True
        entry = self.entry(method)
        if entry is None:
            return True
        if self._expired(entry, self._clock()):
            self._backend.delete(self._key(method))
            return True
        return entry.count < self._config.max_attempts

    def record_failure(self, method: str) -> None:
        if not self._config.enabled:
            return
        now = self._clock()
        entry = self.entry(method)
        if entry is None or self._expired(entry, now):
            # Never carry a stale count into a fresh window.
            self._save(RateLimitEntry(method=method, count=1, window_start=now))
            return
        entry.count += 1
        self._save(entry)
        if entry.count >= self._config.max_attempts:
            logger.warning("Rate limit reached for method=%s (%d failures)", method, entry.count)

    def reset(self, method: str) -> None:
        """
        Reset attempts for a method (e.g., after successful login).
        """
        if not self._config.enabled:
            return
        self._backend.delete(self._key(method))

    def retry_after(self, method: str) -> Optional[int]:
        """Seconds until `method` is allowed again, or None if it is not blocked."""
        if self.allow(method):
            return None
        entry = self.entry(method)
        if entry is None:
            return None
        remaining = entry.window_start + self._window - self._clock()
        return max(1, int(remaining.total_seconds()) + 1)
