"""Asynchronous sliding-window rate limiter with named buckets."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Mapping, Optional

from ..utils.logging import log_json
from ..utils.monitoring import rate_limit_throttle_counter


@dataclass
class Bucket:
    """Sliding window counter.

    Parameters
    ----------
    max_requests:
        Sustained ceiling within ``window``.
    window:
        Window length in seconds.
    burst_allowance:
        Optional higher ceiling used while the window holds fewer entries
        than it.
    """

    name: str
    max_requests: int
    window: float
    burst_allowance: Optional[int] = None
    admitted: Deque[float] = field(default_factory=deque)
    history: Optional[List[float]] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def prune(self, now: float) -> None:
        horizon = now - self.window
        while self.admitted and self.admitted[0] <= horizon:
            self.admitted.popleft()

    def ceiling(self) -> int:
        if self.burst_allowance and len(self.admitted) < self.burst_allowance:
            return self.burst_allowance
        return self.max_requests


class RateLimiter:
    """Admission control keyed by bucket name.

    ``admit`` never rejects: when a bucket is full it sleeps until the oldest
    entry leaves the window and checks again.  Callers express a combined
    burst + sustained contract by admitting against two buckets in turn.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
        record_history: bool = False,
    ) -> None:
        self._clock = clock
        self._record_history = record_history
        self._buckets: Dict[str, Bucket] = {}
        self._log = logger or logging.getLogger("polyexec.rate_limiter")

    def register_bucket(
        self,
        name: str,
        max_requests: int,
        window: float,
        burst_allowance: int | None = None,
    ) -> None:
        """Register ``name``; registering the same name again replaces it."""
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window <= 0:
            raise ValueError("window must be positive")
        if burst_allowance is not None and burst_allowance < 1:
            raise ValueError("burst_allowance must be >= 1")
        self._buckets[name] = Bucket(
            name,
            int(max_requests),
            float(window),
            burst_allowance,
            history=[] if self._record_history else None,
        )

    def configure(self, table: Mapping[str, Mapping[str, float]] | Iterable) -> None:
        """Register every bucket of a declarative table.

        Accepts either ``{name: {"max_requests": .., "window": .., "burst_allowance": ..}}``
        or an iterable of objects exposing those attributes plus ``name``.
        """
        if isinstance(table, Mapping):
            for name, rule in table.items():
                self.register_bucket(
                    name,
                    int(rule["max_requests"]),
                    float(rule["window"]),
                    rule.get("burst_allowance"),
                )
            return
        for rule in table:
            self.register_bucket(rule.name, rule.max_requests, rule.window, rule.burst_allowance)

    def buckets(self) -> List[str]:
        return list(self._buckets)

    async def admit(self, name: str) -> None:
        """Wait until ``name`` has capacity, then record the admission."""
        bucket = self._buckets.get(name)
        if bucket is None:
            return
        while True:
            async with bucket.lock:
                now = self._clock()
                bucket.prune(now)
                if len(bucket.admitted) < bucket.ceiling():
                    bucket.admitted.append(now)
                    if bucket.history is not None:
                        bucket.history.append(now)
                    return
                wait = bucket.admitted[0] + bucket.window - now
                rate_limit_throttle_counter.labels(bucket=name).inc()
                log_json(
                    self._log,
                    "rate_limit_throttle",
                    level=logging.DEBUG,
                    bucket=name,
                    wait_s=round(wait, 4),
                    in_window=len(bucket.admitted),
                )
            await asyncio.sleep(max(wait, 0.0))

    def current_count(self, name: str) -> int:
        """Number of admissions inside the current window."""
        bucket = self._buckets.get(name)
        if bucket is None:
            return 0
        horizon = self._clock() - bucket.window
        return sum(1 for ts in bucket.admitted if ts > horizon)

    def timestamps(self, name: str) -> List[float]:
        """Admission times for ``name``.

        With ``record_history=True`` this is every admission since the last
        :meth:`clear`; otherwise only the entries still inside the window.
        """
        bucket = self._buckets.get(name)
        if bucket is None:
            return []
        if bucket.history is not None:
            return list(bucket.history)
        return list(bucket.admitted)

    def clear(self, name: str | None = None) -> None:
        """Forget admission history (test harness reset)."""
        if name is None:
            targets = list(self._buckets.values())
        else:
            targets = [self._buckets[name]] if name in self._buckets else []
        for bucket in targets:
            bucket.admitted.clear()
            if bucket.history is not None:
                bucket.history.clear()


__all__ = ["Bucket", "RateLimiter"]
