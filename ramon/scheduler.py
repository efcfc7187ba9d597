#!/usr/bin/env python3
"""
=====================================================================
RAMON Scheduler
=====================================================================
A single deadline-ordered timer queue shared by every component that
needs to wake up later: aggregation buckets, rate-limit queues,
duration trackers and tick sources.

Entries are plain records (deadline, sequence, target, key). When an
entry is due the scheduler calls target.on_timer(key, now); the target
decides what the key means. One thread drains the heap, so the number
of pending deadlines never translates into threads.

Tests drive the scheduler with a ManualClock and run_pending() instead
of the background thread.

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import heapq
import itertools
import logging
import threading
import time
from typing import Any, List, Optional, Tuple

from prometheus_client import Gauge

logger = logging.getLogger(__name__)

# Upper bound on how long the loop sleeps, so clock jumps are noticed.
MAX_WAIT_SECONDS = 1.0

METRIC_SCHEDULER_PENDING = Gauge(
    'ramon_scheduler_pending_entries',
    'Timer entries waiting in the scheduler heap'
)


class SystemClock:
    """Wall-clock time in epoch seconds."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        self._now += seconds
        return self._now

    def set(self, timestamp: float) -> None:
        self._now = float(timestamp)


class Scheduler:
    """
    Min-heap of deadlines drained by one loop.

    Usage:
        scheduler = Scheduler(SystemClock())
        scheduler.schedule(clock.now() + 10, aggregator, bucket_key)
        scheduler.start()
    """

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()
        self._heap: List[Tuple[float, int, Any, Any]] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def now(self) -> float:
        return self.clock.now()

    def schedule(self, deadline: float, target: Any, key: Any) -> None:
        with self._condition:
            heapq.heappush(self._heap, (deadline, next(self._sequence), target, key))
            METRIC_SCHEDULER_PENDING.set(len(self._heap))
            self._condition.notify()

    def next_deadline(self) -> Optional[float]:
        with self._condition:
            return self._heap[0][0] if self._heap else None

    def __len__(self) -> int:
        with self._condition:
            return len(self._heap)

    def run_pending(self, now: Optional[float] = None) -> int:
        """Fire every entry due at `now` (default: clock time); returns how many fired."""
        if now is None:
            now = self.clock.now()

        fired = 0
        while True:
            with self._condition:
                if not self._heap or self._heap[0][0] > now:
                    METRIC_SCHEDULER_PENDING.set(len(self._heap))
                    return fired
                _, _, target, key = heapq.heappop(self._heap)

            # Targets run outside the heap lock; they may schedule again.
            try:
                target.on_timer(key, now)
            except Exception as e:
                logger.error(f"Timer callback failed for {type(target).__name__} key={key!r}: {e}", exc_info=True)
            fired += 1

    # -----------------------------------------------------------------
    # Background loop
    # -----------------------------------------------------------------

    def start(self) -> threading.Thread:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="Scheduler")
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        with self._condition:
            self._condition.notify_all()
        if self._thread:
            self._thread.join(timeout=timeout)

    def _loop(self) -> None:
        logger.info("Scheduler thread started")
        while not self._stop_event.is_set():
            with self._condition:
                deadline = self._heap[0][0] if self._heap else None
                wait = MAX_WAIT_SECONDS if deadline is None else deadline - self.clock.now()
                if wait > 0:
                    self._condition.wait(timeout=min(wait, MAX_WAIT_SECONDS))
            if not self._stop_event.is_set():
                self.run_pending()
        logger.info("Scheduler thread stopped")
