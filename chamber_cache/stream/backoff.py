from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from chamber_cache import config


@dataclass
class Backoff:
    """Exponential backoff with full jitter: delay is uniform in [0, min(cap, base * 2**attempt)]."""

    base_s: float = 0.5
    cap_s: float = 30.0
    rng: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_config(cls) -> "Backoff":
        return cls(base_s=config.backoff_base_s(), cap_s=config.backoff_cap_s())

    def ceiling(self, attempt: int) -> float:
        attempt = max(0, min(int(attempt), 32))
        return min(self.cap_s, self.base_s * (2 ** attempt))

    def delay(self, attempt: int) -> float:
        return self.rng() * self.ceiling(attempt)
