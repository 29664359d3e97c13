"""Fixed-window request counter keyed by client identifier.

The table lives in process memory and is never swept: one record per
distinct identifier accumulates for the life of the process.  This is a
known limitation of the single-process, restart-tolerant deployment model,
not something to paper over here.  Swap in another object exposing
``check()`` for a shared or durable store.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class RateLimitRecord:
    count: int
    reset_at: float  # monotonic milliseconds


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class FixedWindowRateLimiter:
    def __init__(self, clock: Callable[[], float] = _monotonic_ms) -> None:
        self._clock = clock
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    def check(self, identifier: str, max_requests: int, window_ms: int) -> bool:
        """Count one request for *identifier*; return True if it is limited.

        A limited request does not increment the counter.
        """
        now = self._clock()
        with self._lock:
            record = self._records.get(identifier)
            if record is None or now > record.reset_at:
                self._records[identifier] = RateLimitRecord(count=1, reset_at=now + window_ms)
                return False
            if record.count >= max_requests:
                return True
            record.count += 1
            return False

    def get(self, identifier: str) -> RateLimitRecord | None:
        with self._lock:
            return self._records.get(identifier)

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
