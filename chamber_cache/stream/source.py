from __future__ import annotations

from typing import AsyncIterator, Callable, List, Optional, Protocol, runtime_checkable

from chamber_cache.protocol import StreamEvent


@runtime_checkable
class EventSource(Protocol):
    """
    Server-pushed events for one session.

    open() establishes the connection and returns the event iterator. With
    resume_token=None the server replays the full history and then sends a
    "synced" marker; with a token it continues after the token. Transport
    failures surface as TransientNetworkError, either from open() or while
    iterating; a clean end of iteration means the server closed the stream.
    """

    async def open(self, session_id: str, resume_token: Optional[str] = None) -> AsyncIterator[StreamEvent]: ...

    async def request_resync(self, session_id: str, message_ids: List[str]) -> None: ...

    async def close(self) -> None: ...


EventSourceFactory = Callable[[str], EventSource]
