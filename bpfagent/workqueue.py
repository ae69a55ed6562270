"""
Work Queue and Controller Loop

WorkQueue hands out reconcile keys to worker threads:
- a key queued several times before it is processed is processed once
- a key is never handed to two workers at once; a key added while it is
  being processed is queued again when the worker calls done()
- add_after() delays a key, used for retries after a failed reconcile

Controller runs the workers, retries failed keys after a fixed delay and
periodically re-queues every known key so drift is healed.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from .constants import Retry, Timeouts
from .utils.error_handling import handle_error

logger = logging.getLogger(__name__)


class WorkQueue:
    """De-duplicating, per-key serialized work queue."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._waiting: List[Tuple[float, int, str]] = []
        self._counter = itertools.count()
        self._cond = threading.Condition()
        self._shutting_down = False

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._counter), key))
            self._cond.notify()

    def _promote_ready(self) -> Optional[float]:
        """Move due delayed keys to the queue; returns seconds until the next one."""
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)
        if self._waiting:
            return self._waiting[0][0] - now
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Take the next key, blocking up to ``timeout`` seconds.

        Returns None on timeout or once the queue is shut down. The caller
        must call done(key) when finished.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_ready = self._promote_ready()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None

                wait = Timeouts.QUEUE_POLL
                if next_ready is not None:
                    wait = min(wait, next_ready)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._waiting)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class Controller:
    """
    Worker pool around a reconcile function.

    ``reconcile(key)`` raises to signal failure; the key is then retried
    after ``retry_delay``. ``list_keys()`` supplies every key for the
    periodic resync.
    """

    def __init__(
        self,
        name: str,
        reconcile: Callable[[str], object],
        list_keys: Callable[[], Iterable[str]],
        workers: int = 1,
        retry_delay: float = Retry.AGENT_RETRY_DELAY,
        resync_interval: float = Retry.RESYNC_INTERVAL,
        queue: Optional[WorkQueue] = None,
    ):
        self.name = name
        self.reconcile = reconcile
        self.list_keys = list_keys
        self.workers = max(1, workers)
        self.retry_delay = max(retry_delay, Retry.MIN_RETRY_DELAY)
        self.resync_interval = resync_interval
        self.queue = queue or WorkQueue()

        self.is_running = False
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._failures: Dict[str, int] = {}
        self._failures_lock = threading.Lock()

    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    def start(self):
        """Start worker and resync threads."""
        if self.is_running:
            return
        self.is_running = True
        self._stop_event.clear()

        for index in range(self.workers):
            thread = threading.Thread(target=self._worker_loop, name=f"{self.name}-worker-{index}",
                                      daemon=True)
            thread.start()
            self._threads.append(thread)

        thread = threading.Thread(target=self._resync_loop, name=f"{self.name}-resync", daemon=True)
        thread.start()
        self._threads.append(thread)

        logger.info(f"Controller {self.name} started with {self.workers} workers")

    def stop(self, timeout: float = Timeouts.THREAD_JOIN_DEFAULT):
        """Stop all threads; in-flight reconciles finish their current batch."""
        if not self.is_running:
            return
        self.is_running = False
        self._stop_event.set()
        self.queue.shutdown()

        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not stop within {timeout}s")
        self._threads.clear()
        logger.info(f"Controller {self.name} stopped")

    def resync(self) -> int:
        """Queue every known key; returns how many were queued."""
        count = 0
        for key in self.list_keys():
            self.queue.add(key)
            count += 1
        logger.debug(f"Controller {self.name} resync queued {count} keys")
        return count

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Process one key; returns False if none was available."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        try:
            self.reconcile(key)
        except Exception as e:
            with self._failures_lock:
                self._failures[key] = self._failures.get(key, 0) + 1
                attempts = self._failures[key]
            handle_error(e, f"{self.name} reconcile {key}",
                         additional_context={'attempts': attempts, 'retry_in': self.retry_delay})
            self.queue.add_after(key, self.retry_delay)
        else:
            with self._failures_lock:
                self._failures.pop(key, None)
        finally:
            self.queue.done(key)
        return True

    def drain(self) -> int:
        """Process queued keys until none is immediately available."""
        processed = 0
        while self.process_next(timeout=0):
            processed += 1
        return processed

    def failure_counts(self) -> Dict[str, int]:
        """Consecutive failures per key that has not succeeded since."""
        with self._failures_lock:
            return dict(self._failures)

    def _worker_loop(self):
        while self.is_running:
            self.process_next(timeout=Timeouts.QUEUE_POLL)

    def _resync_loop(self):
        while not self._stop_event.wait(self.resync_interval):
            try:
                self.resync()
            except Exception as e:
                logger.error(f"Error in {self.name} resync loop: {e}")
