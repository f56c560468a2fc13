"""
Bounded reorder buffer for events of not-yet-seen messages.

Messages of a session carry contiguous sequence numbers. An event for a new
message that skips ahead of the watermark (the highest sequence released so
far) is held until the gap fills or until it has waited window_s, whichever
comes first; then it is released with the gap accepted.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from chamber_cache.protocol import StreamEvent


@dataclass
class _Held:
    message_id: str
    held_at: float
    events: List[StreamEvent] = field(default_factory=list)


class ReorderBuffer:
    def __init__(self, window_s: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self.window_s = window_s
        self.clock = clock
        self._held: Dict[int, _Held] = {}

    def __len__(self) -> int:
        return len(self._held)

    def holds(self, message_id: str) -> bool:
        return any(h.message_id == message_id for h in self._held.values())

    def hold(self, event: StreamEvent) -> bool:
        """
        Hold an event. Returns False if another message already holds the same
        sequence number.
        """
        h = self._held.get(event.sequence_number)
        if h is None:
            h = _Held(message_id=event.message_id, held_at=self.clock())
            self._held[event.sequence_number] = h
        elif h.message_id != event.message_id:
            return False
        h.events.append(event)
        return True

    def next_deadline(self) -> Optional[float]:
        """Seconds until the oldest held message may be released, or None if empty."""
        if not self._held:
            return None
        oldest = min(h.held_at for h in self._held.values())
        return max(0.0, oldest + self.window_s - self.clock())

    def release(self, watermark: int) -> Tuple[List[StreamEvent], int, List[int]]:
        """
        Pop every event that may be applied now, in sequence order.

        A held message whose window elapsed is released together with every
        held message below it, so nothing stays held longer than window_s.

        Returns (events, new_watermark, skipped) where skipped lists the
        sequence numbers given up on because the window elapsed.
        """
        out: List[StreamEvent] = []
        skipped: List[int] = []
        now = self.clock()
        expired = [seq for seq, h in self._held.items() if now - h.held_at >= self.window_s]
        release_through = max(expired) if expired else watermark
        while self._held:
            seq = min(self._held)
            if seq != watermark + 1:
                if seq > release_through:
                    break
                skipped.extend(range(watermark + 1, seq))
            h = self._held.pop(seq)
            out.extend(sorted(h.events, key=lambda e: e.revision))
            watermark = max(watermark, seq)
        return out, watermark, skipped

    def clear(self) -> None:
        self._held.clear()
