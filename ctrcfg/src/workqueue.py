from __future__ import annotations

import heapq
import itertools
import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable

from ctrcfg.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

# With a 5 ms base doubling per failure, a key is retried after roughly
# 5ms, 10ms, 20ms, ... 41s, 82s before it is dropped.
MAX_RETRIES = 15
DROPPED_REQUEUE_DELAY_SECONDS = 60.0


def handle_error(exc: BaseException) -> None:
    """Process-wide sink for errors nobody else can act on."""
    METRICS.unhandled_errors_total.inc()
    LOGGER.error("Unhandled error: %s", exc, exc_info=(type(exc), exc, exc.__traceback__))


class ExponentialRateLimiter:
    """Per-key exponential backoff: ``base * 2**failures`` plus jitter, capped."""

    def __init__(
        self,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
        jitter: float = 0.1,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.base_delay * (2 ** failures), self.max_delay)
        return delay + delay * self.jitter * random.random()  # noqa: S311

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


class RateLimitingQueue:
    """Deduplicating work queue with delayed and rate-limited adds.

    Guarantees:

    - A key is queued at most once; adding a queued key is a no-op.
    - A key is handed to at most one worker at a time.  Adding a key that is
      being processed marks it dirty and it is queued again on :meth:`done`.
    - After :meth:`shut_down`, :meth:`get` drains nothing new and reports
      shutdown to every waiting worker.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: ExponentialRateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ExponentialRateLimiter()
        self.clock = clock
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutting_down = False
        self._cond = threading.Condition()
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_seq = itertools.count()
        self._waiting_cond = threading.Condition()
        self._waiting_thread: threading.Thread | None = None

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
            self._cond.notify()

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available; returns ``(key, shutting_down)``."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
            return key, False

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._waiting_cond:
            self._waiting_cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add_after(self, key: str, delay: float) -> None:
        """Add *key* once *delay* seconds have passed."""
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        with self._waiting_cond:
            heapq.heappush(self._waiting, (self.clock() + delay, next(self._waiting_seq), key))
            if self._waiting_thread is None:
                self._waiting_thread = threading.Thread(
                    target=self._waiting_loop, name=f"{self.name}-delay", daemon=True
                )
                self._waiting_thread.start()
            self._waiting_cond.notify()

    def _waiting_loop(self) -> None:
        while True:
            with self._waiting_cond:
                while not self.shutting_down:
                    if self._waiting and self._waiting[0][0] <= self.clock():
                        break
                    timeout = self._waiting[0][0] - self.clock() if self._waiting else None
                    self._waiting_cond.wait(timeout=timeout)
                if self.shutting_down:
                    return
                ready = []
                while self._waiting and self._waiting[0][0] <= self.clock():
                    ready.append(heapq.heappop(self._waiting)[2])
            for key in ready:
                self.add(key)

    def add_rate_limited(self, key: str) -> None:
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)


def handle_sync_result(
    queue: RateLimitingQueue,
    key: str,
    error: BaseException | None,
    error_sink: Callable[[BaseException], None] = handle_error,
) -> None:
    """Apply the retry/drop policy after one sync of *key*."""
    if error is None:
        queue.forget(key)
        return

    if queue.num_requeues(key) < MAX_RETRIES:
        LOGGER.info("Error syncing %s %s: %s", queue.name, key, error)
        METRICS.requeues_total.labels(queue=queue.name).inc()
        queue.add_rate_limited(key)
        return

    error_sink(error)
    LOGGER.warning("Dropping %s %r out of the queue: %s", queue.name, key, error)
    METRICS.dropped_total.labels(queue=queue.name).inc()
    queue.forget(key)
    queue.add_after(key, DROPPED_REQUEUE_DELAY_SECONDS)


def process_next_work_item(
    queue: RateLimitingQueue,
    sync: Callable[[str], None],
    error_sink: Callable[[BaseException], None] = handle_error,
) -> bool:
    """Run one worker iteration.  Returns False once the queue is shutting down."""
    key, quit_ = queue.get()
    if quit_ or key is None:
        return False
    started = time.monotonic()
    error: BaseException | None = None
    try:
        sync(key)
    except Exception as exc:
        error = exc
    finally:
        METRICS.sync_duration_seconds.labels(queue=queue.name).observe(
            time.monotonic() - started
        )
        queue.done(key)
    METRICS.syncs_total.labels(queue=queue.name, result="error" if error else "success").inc()
    handle_sync_result(queue, key, error, error_sink)
    return True


def run_worker(
    queue: RateLimitingQueue,
    sync: Callable[[str], None],
    error_sink: Callable[[BaseException], None] = handle_error,
) -> None:
    """Drain *queue* until it shuts down.  *sync* never runs concurrently per key."""
    while process_next_work_item(queue, sync, error_sink):
        pass
