"""
Fixed-window request counters keyed by client identifier.

The limiter talks to a counter store rather than a dict so a shared backend can
replace process memory when the app runs on more than one instance.
"""
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol


@dataclass
class RateLimitRecord:
    count: int
    reset_time: float  # epoch milliseconds


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_time: float
    retry_after: int  # whole seconds until the window closes, at least 1


class CounterStore(Protocol):
    def get(self, key: str) -> Optional[RateLimitRecord]:
        ...

    def set(self, key: str, record: RateLimitRecord) -> None:
        ...

    def clear(self) -> None:
        ...


class MemoryCounterStore:
    """Process-local store. Records live until restart or clear()."""

    def __init__(self):
        self._records: Dict[str, RateLimitRecord] = {}

    def get(self, key: str) -> Optional[RateLimitRecord]:
        return self._records.get(key)

    def set(self, key: str, record: RateLimitRecord) -> None:
        self._records[key] = record

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


def now_ms() -> float:
    return time.time() * 1000


class RateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        store: Optional[CounterStore] = None,
        clock: Optional[Callable[[], float]] = None,
        name: str = "default",
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.store = store if store is not None else MemoryCounterStore()
        self.clock = clock or now_ms
        self.name = name
        self._lock = threading.Lock()

    def hit(self, key: str) -> RateLimitResult:
        """Count one request for key and report whether it may proceed."""
        with self._lock:
            now = self.clock()
            record = self.store.get(key)

            if record is None or now > record.reset_time:
                record = RateLimitRecord(count=1, reset_time=now + self.window_ms)
                self.store.set(key, record)
                return self._result(True, self.max_requests - 1, record, now)

            if record.count >= self.max_requests:
                return self._result(False, 0, record, now)

            record.count += 1
            self.store.set(key, record)
            return self._result(True, self.max_requests - record.count, record, now)

    def _result(self, allowed: bool, remaining: int, record: RateLimitRecord, now: float) -> RateLimitResult:
        retry_after = max(1, math.ceil((record.reset_time - now) / 1000.0))
        return RateLimitResult(allowed, self.max_requests, remaining, record.reset_time, retry_after)

    def check_rate_limit(self, key: str) -> bool:
        return self.hit(key).allowed

    def reset(self) -> None:
        with self._lock:
            self.store.clear()
