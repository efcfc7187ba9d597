#!/usr/bin/env python3
"""
=====================================================================
RAMON Notification Rate Limiter
=====================================================================
Token bucket per notification category.

- capacity N from the resolved "N/unit" limit, bucket starts full
- continuous refill: one token every unit/N seconds, capped at N
- a send consumes one token and is released immediately
- with no token available the send is queued (FIFO per category) and
  released by a scheduler entry at the instant the next token appears

Nothing is dropped. A category without a limit passes straight through.

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Set, Tuple

from prometheus_client import Counter, Gauge

logger = logging.getLogger(__name__)

# Tolerance for float drift when a timer fires exactly at the refill instant.
TOKEN_EPSILON = 1e-9

METRIC_RATE_LIMIT_HITS = Counter(
    'ramon_rate_limit_hits_total',
    'Notifications queued because the category had no token',
    ['category']
)

METRIC_RATE_LIMIT_QUEUE_DEPTH = Gauge(
    'ramon_rate_limit_queue_depth',
    'Notifications waiting for a token',
    ['category']
)


class TokenBucket:
    """Continuous-refill token bucket. Not thread-safe on its own."""

    def __init__(self, capacity: int, unit_seconds: float, now: float):
        self.capacity = capacity
        self.unit_seconds = unit_seconds
        self.interval = unit_seconds / capacity
        self.tokens = float(capacity)
        self.last_refill = now

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(self.capacity), self.tokens + elapsed / self.interval)
        # Never move backwards, so a clock regression cannot mint tokens later.
        self.last_refill = max(self.last_refill, now)

    def try_consume(self, now: float) -> bool:
        self.refill(now)
        if self.tokens >= 1.0 - TOKEN_EPSILON:
            self.tokens = max(0.0, self.tokens - 1.0)
            return True
        return False

    def time_until_token(self, now: float) -> float:
        self.refill(now)
        if self.tokens >= 1.0 - TOKEN_EPSILON:
            return 0.0
        return (1.0 - self.tokens) * self.interval

    def reconfigure(self, capacity: int, unit_seconds: float, now: float) -> None:
        self.refill(now)
        self.capacity = capacity
        self.unit_seconds = unit_seconds
        self.interval = unit_seconds / capacity
        self.tokens = min(self.tokens, float(capacity))

    def __repr__(self) -> str:
        return f"TokenBucket({self.capacity}/{self.unit_seconds:g}s, tokens={self.tokens:.2f})"


class RateLimiter:
    """
    Gate between aggregation flushes and dispatch.

    Usage:
        limiter = RateLimiter(scheduler, release=worker.submit)
        limiter.submit("critical", combined, rate=(4, 60.0))
    """

    def __init__(self, scheduler, release: Callable[[Any], None]):
        self.scheduler = scheduler
        self.release = release
        self._buckets: Dict[str, TokenBucket] = {}
        self._queues: Dict[str, Deque[Any]] = {}
        self._armed: Set[str] = set()
        self._lock = threading.Lock()

    def submit(self, category: str, item: Any, rate: Optional[Tuple[int, float]], now: Optional[float] = None) -> bool:
        """Release `item` now if a token is available; otherwise queue it. Returns True if released."""
        if now is None:
            now = self.scheduler.now()

        if rate is None:
            self.release(item)
            return True

        with self._lock:
            bucket = self._bucket_locked(category, rate, now)
            queue = self._queues.setdefault(category, deque())

            # Queued items go first, so a fresh token never jumps the queue.
            if not queue and bucket.try_consume(now):
                released = True
            else:
                queue.append(item)
                released = False
                METRIC_RATE_LIMIT_HITS.labels(category=category).inc()
                METRIC_RATE_LIMIT_QUEUE_DEPTH.labels(category=category).set(len(queue))
                self._arm_locked(category, bucket, now)
                logger.info(
                    f"Rate limit reached for {category} ({bucket.capacity}/{bucket.unit_seconds:g}s); "
                    f"{len(queue)} notification(s) queued"
                )

        if released:
            self.release(item)
        return released

    def on_timer(self, category: str, now: float) -> None:
        released = []
        with self._lock:
            self._armed.discard(category)
            queue = self._queues.get(category)
            bucket = self._buckets.get(category)
            if not queue or bucket is None:
                return

            while queue and bucket.try_consume(now):
                released.append(queue.popleft())

            METRIC_RATE_LIMIT_QUEUE_DEPTH.labels(category=category).set(len(queue))
            if queue:
                self._arm_locked(category, bucket, now)

        for item in released:
            self.release(item)

    def drain(self, deadline: float, sleep: Callable[[float], None] = time.sleep) -> int:
        """
        Release queued items as tokens appear until `deadline` passes.
        Used during shutdown; returns how many items were still queued.
        """
        while True:
            now = self.scheduler.now()
            with self._lock:
                waits = {
                    category: self._buckets[category].time_until_token(now)
                    for category, queue in self._queues.items() if queue
                }
            if not waits:
                return 0

            for category, wait in waits.items():
                if wait <= 0:
                    self.on_timer(category, now)

            next_wait = min((w for w in waits.values() if w > 0), default=0.0)
            if next_wait <= 0:
                continue
            if now + next_wait > deadline:
                remaining = self.pending()
                logger.warning(f"Shutdown grace period over with {remaining} rate-limited notification(s) unsent")
                return remaining
            sleep(next_wait)

    def pending(self, category: Optional[str] = None) -> int:
        with self._lock:
            if category is not None:
                return len(self._queues.get(category, ()))
            return sum(len(q) for q in self._queues.values())

    def tokens(self, category: str, now: Optional[float] = None) -> Optional[float]:
        with self._lock:
            bucket = self._buckets.get(category)
            if bucket is None:
                return None
            bucket.refill(self.scheduler.now() if now is None else now)
            return bucket.tokens

    def _bucket_locked(self, category: str, rate: Tuple[int, float], now: float) -> TokenBucket:
        capacity, unit_seconds = rate
        bucket = self._buckets.get(category)
        if bucket is None:
            bucket = TokenBucket(capacity, unit_seconds, now)
            self._buckets[category] = bucket
        elif (bucket.capacity, bucket.unit_seconds) != (capacity, unit_seconds):
            logger.info(f"Rate limit for {category} changed to {capacity}/{unit_seconds:g}s")
            bucket.reconfigure(capacity, unit_seconds, now)
        return bucket

    def _arm_locked(self, category: str, bucket: TokenBucket, now: float) -> None:
        if category in self._armed:
            return
        self._armed.add(category)
        self.scheduler.schedule(now + bucket.time_until_token(now), self, category)
