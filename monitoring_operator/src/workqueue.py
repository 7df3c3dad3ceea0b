from __future__ import annotations

import heapq
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from monitoring_operator.src.metrics import METRICS

DEFAULT_BASE_DELAY_SECONDS = 0.005
DEFAULT_MAX_DELAY_SECONDS = 1000.0


class RateLimitingQueue:
    """Deduplicating work queue with per-key exponential retry backoff.

    Semantics:
        * A key added while already pending is queued once.
        * A key added while being processed is queued again only after
          :meth:`done`, so two workers never hold the same key.
        * :meth:`add_rate_limited` delays the key by
          ``base * 2**failures`` seconds, capped at ``max_delay``.
        * :meth:`forget` resets the failure count for a key.
        * :meth:`shutdown` wakes every waiter; :meth:`get` then returns ``None``.
    """

    def __init__(
        self,
        name: str = "",
        *,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._seq = 0
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(controller=self.name).set(len(self._queue))

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(key)
                return
            self._seq += 1
            heapq.heappush(self._waiting, (self._clock() + delay, self._seq, key))
            self._cond.notify()

    def when(self, key: Hashable) -> float:
        """Record one more failure for *key* and return its backoff delay."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        try:
            delay = self.base_delay * (2**failures)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def add_rate_limited(self, key: Hashable) -> None:
        METRICS.queue_retries_total.labels(controller=self.name).inc()
        self.add_after(key, self.when(key))

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)
        if self._waiting:
            return max(0.0, self._waiting[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is available and mark it as processing.

        Returns ``None`` on shutdown or when *timeout* elapses first.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    self._update_depth()
                    return key
                if self._shutting_down:
                    return None

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._update_depth()
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
