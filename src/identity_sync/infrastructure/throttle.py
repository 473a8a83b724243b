"""Per-destination concurrency caps and request pacing for sync workers.

Each destination gets a slot counter bounded by its max_concurrency and a
token bucket refilled at destination_rate_per_second.
"""
from __future__ import annotations
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional
from prometheus_client import Counter, Gauge
from identity_sync.config import get_settings

DESTINATION_IN_FLIGHT = Gauge('destination_in_flight', 'Adapter calls currently in flight', ['destination_id'])
DESTINATION_THROTTLED = Counter('destination_throttled_total', 'Slot or token waits that timed out', ['destination_id', 'reason'])


@dataclass
class ThrottleConfig:
    default_concurrency: int = 2
    rate_per_second: float = 10.0
    burst_capacity: int = 10

    @classmethod
    def from_settings(cls, settings=None) -> "ThrottleConfig":
        s = settings or get_settings()
        return cls(
            default_concurrency=s.destination_default_concurrency,
            rate_per_second=s.destination_rate_per_second,
            burst_capacity=max(1, int(s.destination_rate_per_second)),
        )


class _Bucket:
    def __init__(self, rate: float, capacity: int):
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity)
        self.last_refill = time.monotonic()

    def _refill(self):
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.rate)
        self.last_refill = now

    def take(self) -> float:
        """Consume a token; returns 0 on success or the seconds until one is available."""
        self._refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return 0.0
        if self.rate <= 0:
            return float("inf")
        return (1 - self.tokens) / self.rate


class DestinationThrottle:
    def __init__(self, config: Optional[ThrottleConfig] = None):
        self.config = config or ThrottleConfig.from_settings()
        self._cond = threading.Condition()
        self._in_flight: dict[int, int] = {}
        self._limits: dict[int, int] = {}
        self._buckets: dict[int, _Bucket] = {}

    def limit_for(self, destination_id: int, max_concurrency: int | None = None) -> int:
        if max_concurrency:
            self._limits[destination_id] = max(1, int(max_concurrency))
        return self._limits.get(destination_id, max(1, self.config.default_concurrency))

    def saturated(self) -> set[int]:
        """Destinations at their concurrency cap; workers exclude these when claiming."""
        with self._cond:
            return {d for d, n in self._in_flight.items() if n >= self.limit_for(d)}

    def in_flight(self, destination_id: int) -> int:
        with self._cond:
            return self._in_flight.get(destination_id, 0)

    def acquire(self, destination_id: int, max_concurrency: int | None = None, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            limit = self.limit_for(destination_id, max_concurrency)
            while self._in_flight.get(destination_id, 0) >= limit:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    DESTINATION_THROTTLED.labels(str(destination_id), "concurrency").inc()
                    return False
                self._cond.wait(remaining)
            # the slot is held while waiting for a token
            self._in_flight[destination_id] = self._in_flight.get(destination_id, 0) + 1
            bucket = self._buckets.setdefault(destination_id, _Bucket(self.config.rate_per_second, self.config.burst_capacity))
            while True:
                wait = bucket.take()
                if wait == 0:
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0 or wait > remaining:
                    self._in_flight[destination_id] -= 1
                    self._cond.notify_all()
                    DESTINATION_THROTTLED.labels(str(destination_id), "rate").inc()
                    return False
                self._cond.wait(wait)
            DESTINATION_IN_FLIGHT.labels(str(destination_id)).set(self._in_flight[destination_id])
            return True

    def release(self, destination_id: int):
        with self._cond:
            self._in_flight[destination_id] = max(0, self._in_flight.get(destination_id, 0) - 1)
            DESTINATION_IN_FLIGHT.labels(str(destination_id)).set(self._in_flight[destination_id])
            self._cond.notify_all()

    @contextmanager
    def slot(self, destination_id: int, max_concurrency: int | None = None, timeout: float = 5.0):
        acquired = self.acquire(destination_id, max_concurrency, timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(destination_id)
