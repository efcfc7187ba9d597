#!/usr/bin/env python3
"""
=====================================================================
RAMON Notification Aggregator
=====================================================================
Buffers fired notifications into buckets and flushes them as one
combined notification.

Modes (from the resolved NotificationConfig):
- immediate  aggregate = "0s": every submit flushes on its own
- window     first submit opens the bucket with
                 window_deadline = now + aggregate
                 hard_deadline   = now + aggregate_timeout
             each later submit moves
                 window_deadline = min(now + aggregate, hard_deadline)
             and the bucket flushes at window_deadline
- schedule   the bucket flushes at the first schedule occurrence after
             it was opened, never on idle

Each bucket owns a single scheduler entry. A window extension does not
push new entries; when the entry fires before the (moved) window
deadline it is re-armed instead.

Flushed notifications go to the RateLimiter, which releases them to the
dispatch worker.

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from prometheus_client import Counter, Gauge

from ramon.cascade import AggregationMode, ConfigCascade, NotificationConfig

logger = logging.getLogger(__name__)

METRIC_NOTIFICATIONS_SUBMITTED = Counter(
    'ramon_notifications_submitted_total',
    'Notification requests submitted for aggregation',
    ['category']
)

METRIC_AGGREGATION_FLUSHES = Counter(
    'ramon_aggregation_flushes_total',
    'Aggregation buckets flushed',
    ['category', 'reason']
)

METRIC_OPEN_BUCKETS = Gauge(
    'ramon_aggregation_open_buckets',
    'Aggregation buckets currently collecting notifications'
)


class FlushReason:
    """Enum-like class for why a bucket flushed."""
    IMMEDIATE = "immediate"
    IDLE = "idle"
    HARD_TIMEOUT = "hard_timeout"
    SCHEDULE = "schedule"
    SHUTDOWN = "shutdown"


class NotificationRequest:
    """One fired notify directive, title already interpolated."""

    __slots__ = ('category', 'title', 'monitor', 'created')

    def __init__(self, category: str, title: str, monitor: Optional[str], created: float):
        self.category = category
        self.title = title
        self.monitor = monitor
        self.created = created

    def __repr__(self) -> str:
        return f"NotificationRequest({self.category!r}, {self.title!r}, monitor={self.monitor!r})"


class CombinedNotification:
    """Output of one flush: everything a dispatcher needs to send."""

    def __init__(self, category: str, key: Tuple, requests: List[NotificationRequest],
                 timestamp: float, config: NotificationConfig, reason: str, limit_key: Optional[str] = None):
        self.category = category
        self.limit_key = limit_key or category
        self.key = key
        self.count = len(requests)
        self.timestamp = timestamp
        self.config = config
        self.reason = reason
        self.occurrences = [r.created for r in requests]
        self.monitors = sorted({r.monitor for r in requests if r.monitor})

        titles: Dict[str, None] = {}
        for request in requests:
            titles.setdefault(request.title, None)
        self.titles = list(titles)

    @property
    def combined_title(self) -> str:
        """Every distinct title, one per line, in submit order."""
        return "\n".join(self.titles)

    def __repr__(self) -> str:
        return f"CombinedNotification({self.category!r}, count={self.count}, title={self.combined_title!r})"


class AggregationBucket:
    def __init__(self, key: Tuple, config: NotificationConfig, opened: float, limit_key: Optional[str] = None):
        self.key = key
        self.limit_key = limit_key or key[0]
        self.config = config
        self.opened = opened
        self.requests: List[NotificationRequest] = []
        self.window_deadline: Optional[float] = None
        self.hard_deadline: Optional[float] = None
        self.schedule_deadline: Optional[float] = None
        self.idle_deadline: Optional[float] = None

        if config.mode == AggregationMode.SCHEDULE:
            self.schedule_deadline = config.schedule.next_after(opened)
        else:
            self.hard_deadline = opened + config.aggregate_timeout
            self.idle_deadline = opened + config.aggregate
            self.window_deadline = min(self.idle_deadline, self.hard_deadline)

    def add(self, request: NotificationRequest, now: float) -> None:
        self.requests.append(request)
        if self.window_deadline is not None and self.requests[:-1]:
            self.idle_deadline = now + self.config.aggregate
            self.window_deadline = min(self.idle_deadline, self.hard_deadline)

    @property
    def deadline(self) -> float:
        if self.schedule_deadline is not None:
            return self.schedule_deadline
        return self.window_deadline

    def flush_reason(self, now: float) -> str:
        if self.schedule_deadline is not None:
            return FlushReason.SCHEDULE
        # Hard deadline reached while the idle window was still open
        if now >= self.hard_deadline and self.idle_deadline > self.hard_deadline:
            return FlushReason.HARD_TIMEOUT
        return FlushReason.IDLE


class NotificationAggregator:
    """
    Collects NotificationRequests per bucket key and flushes them.

    Usage:
        aggregator = NotificationAggregator(cascade, scheduler, limiter)
        aggregator.submit(NotificationRequest("critical", "disk full", "disk", now))
    """

    def __init__(self, cascade: ConfigCascade, scheduler, rate_limiter):
        self.cascade = cascade
        self.scheduler = scheduler
        self.rate_limiter = rate_limiter
        self._buckets: Dict[Tuple, AggregationBucket] = {}
        self._lock = threading.Lock()

    def bucket_key(self, config: NotificationConfig, request: NotificationRequest) -> Tuple:
        """
        Requests of one category share a bucket unless a monitor layer
        changed their resolved settings, or aggregate_by = "monitor".
        """
        if config.aggregate_by == 'monitor' or self._monitor_override(config, request):
            return (request.category, request.monitor)
        return (request.category, None)

    def limit_key(self, config: NotificationConfig, request: NotificationRequest) -> str:
        """Token bucket name: the category, or category:monitor under a monitor-level limit."""
        if request.monitor is not None and config.limit != self.cascade.resolve(request.category).limit:
            return f"{request.category}:{request.monitor}"
        return request.category

    def _monitor_override(self, config: NotificationConfig, request: NotificationRequest) -> bool:
        if request.monitor is None:
            return False
        return config.settings != self.cascade.resolve(request.category).settings

    def submit(self, request: NotificationRequest, now: Optional[float] = None) -> None:
        if now is None:
            now = self.scheduler.now()

        config = self.cascade.resolve(request.category, request.monitor)
        METRIC_NOTIFICATIONS_SUBMITTED.labels(category=request.category).inc()

        key = self.bucket_key(config, request)
        limit_key = self.limit_key(config, request)

        if config.mode == AggregationMode.IMMEDIATE:
            self._release(CombinedNotification(request.category, key, [request], now, config,
                                               FlushReason.IMMEDIATE, limit_key), now)
            return

        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = AggregationBucket(key, config, now, limit_key)
                self._buckets[key] = bucket
                METRIC_OPEN_BUCKETS.set(len(self._buckets))
                self.scheduler.schedule(bucket.deadline, self, key)
                logger.debug(f"Opened {config.mode} bucket {key} flushing at {bucket.deadline}")
            bucket.add(request, now)

    def on_timer(self, key: Tuple, now: float) -> None:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return
            if now < bucket.deadline:
                # Window moved since this entry was armed.
                self.scheduler.schedule(bucket.deadline, self, key)
                return
            del self._buckets[key]
            METRIC_OPEN_BUCKETS.set(len(self._buckets))
            reason = bucket.flush_reason(now)

        self._flush(bucket, now, reason)

    def flush_all(self, now: Optional[float] = None) -> int:
        """Flush every open bucket regardless of deadlines; returns how many flushed."""
        if now is None:
            now = self.scheduler.now()
        with self._lock:
            buckets = list(self._buckets.values())
            self._buckets.clear()
            METRIC_OPEN_BUCKETS.set(0)

        for bucket in buckets:
            self._flush(bucket, now, FlushReason.SHUTDOWN)
        return len(buckets)

    def open_buckets(self) -> List[Tuple]:
        with self._lock:
            return list(self._buckets)

    def bucket(self, key: Tuple) -> Optional[AggregationBucket]:
        with self._lock:
            return self._buckets.get(key)

    def _flush(self, bucket: AggregationBucket, now: float, reason: str) -> None:
        category = bucket.key[0]
        combined = CombinedNotification(category, bucket.key, bucket.requests, now, bucket.config, reason,
                                        bucket.limit_key)
        logger.info(f"Flushing {combined.count} notification(s) for {bucket.key} ({reason})")
        self._release(combined, now)

    def _release(self, combined: CombinedNotification, now: float) -> None:
        METRIC_AGGREGATION_FLUSHES.labels(category=combined.category, reason=combined.reason).inc()
        self.rate_limiter.submit(combined.limit_key, combined, combined.config.limit, now)
