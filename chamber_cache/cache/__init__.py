"""
Storage layer: in-memory index, eviction policy and persistence adapters.
"""

from .store import CacheStore
from .persistence import FilePersistence, MemoryPersistence, PersistenceAdapter, PersistenceWriter
from .sqlite import SqlitePersistence

__all__ = [
    "CacheStore",
    "FilePersistence",
    "MemoryPersistence",
    "PersistenceAdapter",
    "PersistenceWriter",
    "SqlitePersistence",
]
