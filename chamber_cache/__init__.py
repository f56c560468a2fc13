"""
Chamber cache - client-side session/message cache with live stream reconciliation.

A bounded CacheStore (LRU, TTL and size budgets) holds chat sessions and their
messages; one StreamReconciler per followed session keeps it in step with the
server's event stream. SessionCache is the entry point for UI code.
"""
from .cache.store import CacheStore
from .facade import SessionCache, Snapshot, build_persistence
from .models import Budgets, CacheStats, MessageEntry, SessionEntry, StreamState
from .stream.reconciler import ReconcilerSettings, ReconcilerState, StreamReconciler

__version__ = "0.1.0"
__all__ = [
    "CacheStore",
    "SessionCache", "Snapshot", "build_persistence",
    "Budgets", "CacheStats", "MessageEntry", "SessionEntry", "StreamState",
    "ReconcilerSettings", "ReconcilerState", "StreamReconciler",
]
