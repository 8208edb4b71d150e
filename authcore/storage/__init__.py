"""
Storage ports.

Everything that must survive a redirect (session record, pending ceremonies,
registered credential references) goes through a small text key/value interface so
the auth core can run against memory in tests and a JSON file in real deployments.
"""

from authcore.storage.base import KeyValueStore
from authcore.storage.ceremonies import CeremonyStore
from authcore.storage.local_store import LocalStore
from authcore.storage.memory_store import MemoryStore

__all__ = ["KeyValueStore", "CeremonyStore", "LocalStore", "MemoryStore"]
