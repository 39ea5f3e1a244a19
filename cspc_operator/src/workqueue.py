from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from cspc_operator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        # 2**64 overflows any sane cap, stop growing there.
        if exponent > 63:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**exponent))

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class BucketRateLimiter:
    """Overall token bucket limiter shared by every item (``qps`` refill, ``burst`` size)."""

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def num_requeues(self, item: Hashable) -> int:
        return 0

    def forget(self, item: Hashable) -> None:
        return None


class MaxOfRateLimiter:
    """Returns the worst delay of all wrapped limiters."""

    def __init__(self, *limiters: ItemExponentialFailureRateLimiter | BucketRateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)


RateLimiter = ItemExponentialFailureRateLimiter | BucketRateLimiter | MaxOfRateLimiter


def default_controller_rate_limiter() -> MaxOfRateLimiter:
    """Per-item backoff (5 ms to 1000 s) combined with a 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class WorkQueue:
    """Deduplicating FIFO work queue.

    Guarantees:
        * An item added several times before it is picked up is processed once.
        * An item is never handed to two workers at the same time.  Adding an
          item that is currently being processed marks it dirty, and it is
          queued again only when the worker calls :meth:`done`.

    Key internal state:
        ``_queue``
            Items ready to be handed out, in order.
        ``_dirty``
            Items that need processing (queued or re-added while processing).
        ``_processing``
            Items currently held by a worker.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

    def _update_depth(self) -> None:
        METRICS.workqueue_depth.labels(name=self.name).set(len(self._queue))

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            METRICS.workqueue_adds_total.labels(name=self.name).inc()
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._update_depth()
            self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until an item is available; return ``(item, shutdown)``.

        ``shutdown`` is True only once the queue is shutting down and empty,
        telling the worker to exit.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._update_depth()
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._update_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down


class DelayingQueue(WorkQueue):
    """Work queue that can also add items after a delay.

    A single background thread owns a min-heap of ``(due_at, seq, item)``
    entries.  An item waiting more than once keeps its earliest due time.
    """

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(name=name)
        self._clock = clock
        self._delay_cond = threading.Condition()
        self._heap: list[tuple[float, int, Hashable]] = []
        self._waiting: dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._waiter: threading.Thread | None = None

    def add_after(self, item: Hashable, delay_seconds: float) -> None:
        if self.shutting_down():
            return
        if delay_seconds <= 0:
            self.add(item)
            return
        due_at = self._clock() + delay_seconds
        with self._delay_cond:
            if self._waiter is None:
                self._waiter = threading.Thread(
                    target=self._waiting_loop,
                    name=f"workqueue-delay-{self.name}",
                    daemon=True,
                )
                self._waiter.start()
            existing = self._waiting.get(item)
            if existing is not None and existing <= due_at:
                return
            self._waiting[item] = due_at
            heapq.heappush(self._heap, (due_at, next(self._seq), item))
            self._delay_cond.notify()

    def _pop_ready(self, now: float) -> list[Hashable]:
        ready: list[Hashable] = []
        while self._heap and self._heap[0][0] <= now:
            due_at, _, item = heapq.heappop(self._heap)
            # Entries superseded by an earlier due time are stale.
            if self._waiting.get(item) != due_at:
                continue
            del self._waiting[item]
            ready.append(item)
        return ready

    def _waiting_loop(self) -> None:
        while True:
            with self._delay_cond:
                if self.shutting_down():
                    return
                ready = self._pop_ready(self._clock())
                if not ready:
                    timeout = self._heap[0][0] - self._clock() if self._heap else None
                    self._delay_cond.wait(timeout=timeout)
                    continue
            for item in ready:
                self.add(item)

    def shut_down(self) -> None:
        super().shut_down()
        with self._delay_cond:
            self._delay_cond.notify_all()

    def join_waiter(self, timeout: float | None = None) -> None:
        with self._delay_cond:
            waiter = self._waiter
        if waiter is not None:
            waiter.join(timeout=timeout)


class RateLimitingQueue(DelayingQueue):
    """Delaying queue whose re-adds are spaced out by a rate limiter."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name=name, clock=clock)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.rate_limiter.when(item)
        METRICS.workqueue_retries_total.labels(name=self.name).inc()
        LOGGER.debug("Requeueing %s after %.3fs", item, delay)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)
