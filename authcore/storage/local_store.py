"""Local filesystem key/value store (a single JSON document on disk)."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class LocalStore:
    """
    Durable key/value storage backed by one JSON file.

    State written here survives process restarts, which is what lets an OAuth2 flow
    started in one invocation be completed by the callback in another.
    """

    path: str = "./.authcore/state.json"

    def __post_init__(self) -> None:
        """Ensure the parent directory exists."""
        self.path = os.path.abspath(self.path)
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> Dict[str, str]:
        p = Path(self.path)
        if not p.exists():
            return {}
        try:
            data = json.loads(p.read_text(encoding="utf-8") or "{}")
        except ValueError:
            logger.warning("State file %s is not valid JSON; starting empty", self.path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if isinstance(v, str)}

    def _save(self, data: Dict[str, str]) -> None:
        # Write-then-rename so a crash never leaves a truncated file behind.
        parent = str(Path(self.path).parent)
        fd, tmp = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, sort_keys=True, indent=2)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)
