from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from kube_expose.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ExponentialBackoffRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2 ** failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one failure for the item, so the first
    retry waits ``base_delay``, the second twice that, and so on.
    :meth:`forget` resets the history once the item succeeds.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        # Avoid float overflow for very long failure streaks.
        if failures > 62:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**failures))

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class RateLimitingQueue:
    """Deduplicating work queue of hashable keys with delayed and rate-limited adds.

    Internal state, all guarded by ``_cond``:
        ``_queue``
            Keys ready to be handed out by :meth:`get`, oldest first.
        ``_dirty``
            Keys that need processing.  A key is added here on every
            :meth:`add`; while it is present further adds are collapsed.
        ``_processing``
            Keys currently handed out and not yet released with :meth:`done`.
            A key that is re-added while processing stays only in ``_dirty``
            and is moved back to ``_queue`` by :meth:`done`, so at most one
            worker ever holds a given key.
        ``_waiting``
            Heap of ``(ready_at, seq, key)`` for delayed adds, drained by a
            single background thread.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: ExponentialBackoffRateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ExponentialBackoffRateLimiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._shutting_down = False
        self._waiter: threading.Thread | None = None

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        METRICS.queue_adds_total.inc()
        if item in self._processing:
            return
        self._queue.append(item)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify_all()

    def add(self, item: Hashable) -> None:
        with self._cond:
            self._add_locked(item)

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until a key is available; return ``(key, shutdown)``.

        Returns ``(None, True)`` once the queue is shut down and empty.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            METRICS.queue_depth.set(len(self._queue))
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        """Release the in-flight marker for *item*, re-queuing it if it was re-added."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify_all()

    def add_after(self, item: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_seconds
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._ensure_waiter_locked()
            self._cond.notify_all()

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.rate_limiter.when(item)
        METRICS.queue_retries_total.inc()
        LOGGER.debug("Re-queuing %s on %s in %.3fs", item, self.name, delay)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        """Stop accepting keys and wake every blocked :meth:`get` and the delay thread."""
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._cond.notify_all()
            waiter = self._waiter
        if waiter is not None and waiter is not threading.current_thread():
            waiter.join(timeout=5)

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _ensure_waiter_locked(self) -> None:
        if self._waiter is not None and self._waiter.is_alive():
            return
        self._waiter = threading.Thread(
            target=self._wait_loop,
            name=f"{self.name}-delay",
            daemon=True,
        )
        self._waiter.start()

    def _wait_loop(self) -> None:
        with self._cond:
            while not self._shutting_down:
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    _, _, item = heapq.heappop(self._waiting)
                    self._add_locked(item)
                if self._waiting:
                    self._cond.wait(timeout=max(0.0, self._waiting[0][0] - now))
                else:
                    self._cond.wait()
