from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class Backoff:
    """
    Exponential backoff between retry attempts.

    Uses "full jitter" (random uniform in [0, cap]) when `jitter` is set.
    """

    base_seconds: float = 5.0
    max_seconds: float = 120.0
    jitter: bool = False

    def next_delay_s(self, *, error_count: int) -> float:
        if error_count <= 0:
            return 0.0
        cap = min(self.max_seconds, self.base_seconds * (2 ** (error_count - 1)))
        if cap <= 0:
            return 0.0
        return random.random() * cap if self.jitter else cap
