#!/usr/bin/env python3
"""
=====================================================================
RAMON Dispatchers
=====================================================================
Delivery of combined notifications.

Contract:
    send(category, combined_title, count, occurrences, timestamp) -> bool

combined_title holds every distinct title of the flush, one per line.

Transports:
- log      writes the notification to the agent log
- webhook  JSON POST with requests
- smtp     plain-text mail with smtplib

Dispatchers never retry. A failure is logged, counted and reported
back as False. The DispatchWorker runs every send on its own thread,
so event processing never waits on network I/O.

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import logging
import queue
import smtplib
import socket
import threading
import time
from datetime import datetime, timezone
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Sequence, Tuple

import requests
from prometheus_client import Counter, Gauge, Histogram

from ramon.cascade import NotificationConfig

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_DISPATCHED_TOTAL = Counter(
    'ramon_notifications_dispatched_total',
    'Combined notifications handed to a transport',
    ['transport', 'status']  # success, fail_http, fail_rate_limit, fail_smtp, error
)

METRIC_DISPATCH_LATENCY = Histogram(
    'ramon_dispatch_latency_seconds',
    'Latency of a single transport send',
    ['transport'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

METRIC_DISPATCH_QUEUE_DEPTH = Gauge(
    'ramon_dispatch_queue_depth',
    'Combined notifications waiting for the dispatch worker'
)


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _summary(titles: Sequence[str]) -> str:
    if len(titles) <= 1:
        return "".join(titles)
    return f"{titles[0]} (+{len(titles) - 1} more)"


class Dispatcher:
    """Base transport. Subclasses implement send()."""

    transport = "base"

    def send(self, category: str, combined_title: str, count: int,
             occurrences: Sequence[float], timestamp: float) -> bool:
        raise NotImplementedError


class LogDispatcher(Dispatcher):
    transport = "log"

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logging.getLogger("ramon.notifications")

    def send(self, category, combined_title, count, occurrences, timestamp):
        suffix = f" [{count} occurrences]" if count > 1 else ""
        self.log.warning(f"[{category}] {'; '.join(combined_title.splitlines())}{suffix}")
        return True


class WebhookDispatcher(Dispatcher):
    """
    POSTs one JSON document per notification:

        {"category", "title", "titles", "count", "occurrences", "timestamp", "host"}

    "title" is the one-line summary, "titles" lists every distinct title.

    2xx is success; 429, 5xx, 4xx, timeouts and connection errors are
    failures.
    """

    transport = "webhook"

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.host = socket.gethostname()

    def send(self, category, combined_title, count, occurrences, timestamp):
        titles = combined_title.splitlines()
        payload = {
            "category": category,
            "title": _summary(titles),
            "titles": titles,
            "count": count,
            "occurrences": [_iso(t) for t in occurrences],
            "timestamp": _iso(timestamp),
            "host": self.host,
        }

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout:
            logger.error(f"Webhook request timeout after {self.timeout}s")
            METRIC_DISPATCHED_TOTAL.labels(transport=self.transport, status='fail_http').inc()
            return False
        except requests.exceptions.RequestException as e:
            logger.error(f"Webhook connection error: {e}")
            METRIC_DISPATCHED_TOTAL.labels(transport=self.transport, status='fail_http').inc()
            return False

        if 200 <= response.status_code < 300:
            logger.info(f"Sent {category} notification to webhook ({count} occurrence(s))")
            METRIC_DISPATCHED_TOTAL.labels(transport=self.transport, status='success').inc()
            return True

        if response.status_code == 429:
            logger.warning(f"Webhook rate limited us (429) for {category}")
            METRIC_DISPATCHED_TOTAL.labels(transport=self.transport, status='fail_rate_limit').inc()
        elif response.status_code >= 500:
            logger.error(f"Webhook server error: {response.status_code} - {response.text[:200]}")
            METRIC_DISPATCHED_TOTAL.labels(transport=self.transport, status='fail_http').inc()
        else:
            logger.error(f"Webhook client error: {response.status_code} - {response.text[:200]}")
            METRIC_DISPATCHED_TOTAL.labels(transport=self.transport, status='fail_http').inc()
        return False


class SmtpDispatcher(Dispatcher):
    transport = "smtp"

    def __init__(self, host: str, port: int, sender: str, recipients: Sequence[str],
                 starttls: bool = False, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.sender = sender
        self.recipients = list(recipients)
        self.starttls = starttls
        self.timeout = timeout
        self.hostname = socket.gethostname()

    def build_message(self, category, combined_title, count, occurrences, timestamp) -> MIMEText:
        titles = combined_title.splitlines()
        lines = titles + [""]
        if count > 1:
            lines.append(f"{count} occurrences:")
            lines.extend(f"  {_iso(t)}" for t in occurrences)
        else:
            lines.append(f"At {_iso(timestamp)}")

        msg = MIMEText("\n".join(lines) + "\n", "plain", "utf-8")
        msg["Subject"] = f"[{self.hostname}] [{category}] {_summary(titles)}"
        msg["From"] = self.sender
        msg["To"] = ", ".join(self.recipients)
        return msg

    def send(self, category, combined_title, count, occurrences, timestamp):
        msg = self.build_message(category, combined_title, count, occurrences, timestamp)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.starttls:
                    server.starttls()
                server.sendmail(self.sender, self.recipients, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP delivery to {self.host}:{self.port} failed: {e}")
            METRIC_DISPATCHED_TOTAL.labels(transport=self.transport, status='fail_smtp').inc()
            return False

        logger.info(f"Mailed {category} notification to {len(self.recipients)} recipient(s)")
        METRIC_DISPATCHED_TOTAL.labels(transport=self.transport, status='success').inc()
        return True


def build_dispatcher(config: NotificationConfig) -> Dispatcher:
    if config.transport == 'webhook':
        return WebhookDispatcher(config.webhook_url, timeout=config.webhook_timeout or 10.0)
    if config.transport == 'smtp':
        return SmtpDispatcher(config.smtp_host, config.smtp_port or 25, config.sender,
                              config.recipients, starttls=bool(config.smtp_starttls))
    return LogDispatcher()


# =====================================================================
# DISPATCH WORKER
# =====================================================================

class DispatchWorker:
    """
    Single background thread that performs every send.

    Usage:
        worker = DispatchWorker()
        limiter = RateLimiter(scheduler, release=worker.submit)
        worker.start()
    """

    _STOP = object()

    def __init__(self, factory=build_dispatcher):
        self.factory = factory
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._dispatchers: Dict[Tuple, Dispatcher] = {}
        self._thread: Optional[threading.Thread] = None

    def submit(self, combined) -> None:
        self._queue.put(combined)
        METRIC_DISPATCH_QUEUE_DEPTH.set(self._queue.qsize())

    def pending(self) -> int:
        return self._queue.qsize()

    def dispatcher_for(self, config: NotificationConfig) -> Dispatcher:
        key = config.transport_key()
        dispatcher = self._dispatchers.get(key)
        if dispatcher is None:
            dispatcher = self.factory(config)
            self._dispatchers[key] = dispatcher
        return dispatcher

    def deliver(self, combined) -> bool:
        """Send one combined notification; never raises."""
        config = combined.config
        dispatcher = self.dispatcher_for(config)
        start_time = time.time()
        try:
            ok = dispatcher.send(combined.category, combined.combined_title, combined.count,
                                 combined.occurrences, combined.timestamp)
        except Exception as e:
            logger.error(f"Dispatcher {dispatcher.transport} raised for {combined.category}: {e}", exc_info=True)
            METRIC_DISPATCHED_TOTAL.labels(transport=dispatcher.transport, status='error').inc()
            ok = False
        finally:
            METRIC_DISPATCH_LATENCY.labels(transport=dispatcher.transport).observe(time.time() - start_time)

        if ok and dispatcher.transport == 'log':
            METRIC_DISPATCHED_TOTAL.labels(transport='log', status='success').inc()
        return ok

    def drain(self) -> int:
        """Deliver everything queued on the calling thread; returns how many were sent."""
        sent = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not self._STOP:
                self.deliver(item)
                sent += 1
        METRIC_DISPATCH_QUEUE_DEPTH.set(0)
        return sent

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self._loop, daemon=True, name="DispatchWorker")
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 10.0) -> None:
        """Deliver what is already queued, then stop the thread."""
        self._queue.put(self._STOP)
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Dispatch worker still busy after {timeout}s; {self.pending()} notification(s) unsent")

    def _loop(self) -> None:
        logger.info("Dispatch worker started")
        while True:
            item = self._queue.get()
            METRIC_DISPATCH_QUEUE_DEPTH.set(self._queue.qsize())
            if item is self._STOP:
                break
            self.deliver(item)
        logger.info("Dispatch worker stopped")
