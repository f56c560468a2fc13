from .backoff import Backoff
from .reconciler import ReconcilerSettings, ReconcilerState, StreamReconciler
from .reorder import ReorderBuffer
from .source import EventSource, EventSourceFactory
from .websocket_source import WebSocketEventSource

__all__ = [
    "Backoff",
    "ReconcilerSettings", "ReconcilerState", "StreamReconciler",
    "ReorderBuffer",
    "EventSource", "EventSourceFactory",
    "WebSocketEventSource",
]
