#!/usr/bin/env python3
"""
=====================================================================
RAMON Agent Service
=====================================================================
Host-monitoring agent process.

- loads the rule set (TOML) and fails fast on any configuration error
- consumes events from a Redis list with BRPOPLPUSH into a per-pod
  processing list
- drives tick sources for `every` monitors from the shared scheduler
- evaluates events with the RuleEngine; notifications go through the
  aggregator, the rate limiter and the dispatch worker
- exposes Prometheus metrics and a /health endpoint
- on SIGTERM/SIGINT flushes every aggregation bucket, drains the
  rate-limit queues within the grace period, persists variables and
  stops the dispatch worker

Event message format (JSON):
    {"source": "log:/var/log/auth.log", "fields": {"line": "..."}, "timestamp": 1700000000.0}

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import os
import sys
import json
import time
import uuid
import signal
import logging
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, Optional, Tuple

import redis
from prometheus_client import Counter, Gauge, start_http_server

from ramon.aggregator import NotificationAggregator
from ramon.dispatchers import DispatchWorker
from ramon.literals import ConfigurationError
from ramon.logging_utils import setup_json_logging
from ramon.rate_limiter import RateLimiter
from ramon.redis_connector import get_redis_pool
from ramon.rules import RuleEngine
from ramon.ruleset import RuleSet, load_file
from ramon.scheduler import Scheduler, SystemClock
from ramon.variables import FileVariableBackend, RedisVariableBackend, VariableStore

SERVICE_NAME = "ramon-agent"
SERVICE_VERSION = "0.3"

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_MESSAGES_TOTAL = Counter(
    'ramon_queue_messages_total',
    'Event messages taken from the Redis queue',
    ['status']  # processed, invalid, error
)

METRIC_PROCESSING_LIST_DEPTH = Gauge(
    'ramon_processing_list_depth',
    'Current depth of this agent\'s processing list'
)

METRIC_TICKS_TOTAL = Counter(
    'ramon_ticks_total',
    'Tick events generated for `every` monitors',
    ['monitor']
)

# =====================================================================
# CONSTANTS
# =====================================================================

MESSAGE_PREVIEW_LENGTH = 200

# =====================================================================
# CONFIGURATION
# =====================================================================

class Config:
    """Service configuration loaded from environment variables."""

    def __init__(self):
        try:
            # Service Identity
            self.RAMON_CONFIG = os.environ.get('RAMON_CONFIG', '/etc/ramon.toml')
            self.POD_NAME = os.environ.get('POD_NAME', f"ramon-{uuid.uuid4().hex[:6]}")
            self.LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
            self.METRICS_PORT = int(os.environ.get('METRICS_PORT', 9184))
            self.HEALTH_PORT = int(os.environ.get('HEALTH_PORT', 9185))

            # Redis Config
            self.REDIS_HOST = os.environ.get('REDIS_HOST', 'localhost')
            self.REDIS_PORT = int(os.environ.get('REDIS_PORT', 6379))
            self.REDIS_TLS_ENABLED = os.environ.get('REDIS_TLS_ENABLED', 'false').lower() == 'true'
            self.REDIS_CA_CERT_PATH = os.environ.get('REDIS_CA_CERT_PATH')
            self.REDIS_PASS = os.environ.get('REDIS_PASS')
            self.REDIS_PASS_NEXT = os.environ.get('REDIS_PASS_NEXT')
            self.REDIS_MAX_CONNECTIONS = int(os.environ.get('REDIS_MAX_CONNECTIONS', 10))
            self.EVENT_QUEUE_NAME = os.environ.get('EVENT_QUEUE_NAME', 'ramon:events')
            self.PROCESSING_LIST_PREFIX = os.environ.get('PROCESSING_LIST_PREFIX', 'ramon:processing')
            self.BRPOPLPUSH_TIMEOUT = int(os.environ.get('BRPOPLPUSH_TIMEOUT', 5))

            # Variable persistence
            self.VAR_STORE_BACKEND = os.environ.get('VAR_STORE_BACKEND', 'file').lower()
            self.VAR_STORE_DIR = os.environ.get('VAR_STORE_DIR', '/var/cache/ramon')
            self.VAR_STORE_PREFIX = os.environ.get('VAR_STORE_PREFIX', 'ramon:var')

            # Shutdown
            self.SHUTDOWN_GRACE_SECONDS = float(os.environ.get('SHUTDOWN_GRACE_SECONDS', 10))

            # Validate configuration
            self._validate()

        except Exception as e:
            logger.error(f"FATAL: Configuration error: {e}")
            sys.exit(1)

    def _validate(self):
        """Validate critical configuration values."""
        if self.VAR_STORE_BACKEND not in ('file', 'redis'):
            raise ValueError(f"VAR_STORE_BACKEND must be 'file' or 'redis', got {self.VAR_STORE_BACKEND!r}")

        if self.BRPOPLPUSH_TIMEOUT < 1:
            raise ValueError(f"BRPOPLPUSH_TIMEOUT too low: {self.BRPOPLPUSH_TIMEOUT}")

        if self.METRICS_PORT < 1 or self.METRICS_PORT > 65535:
            raise ValueError(f"METRICS_PORT invalid: {self.METRICS_PORT}")

        if self.HEALTH_PORT < 1 or self.HEALTH_PORT > 65535:
            raise ValueError(f"HEALTH_PORT invalid: {self.HEALTH_PORT}")

        if self.SHUTDOWN_GRACE_SECONDS < 0:
            raise ValueError(f"SHUTDOWN_GRACE_SECONDS must be >= 0: {self.SHUTDOWN_GRACE_SECONDS}")

        if self.REDIS_TLS_ENABLED and self.REDIS_CA_CERT_PATH and not os.path.exists(self.REDIS_CA_CERT_PATH):
            raise ValueError(f"REDIS_CA_CERT_PATH not found: {self.REDIS_CA_CERT_PATH}")

        logger.info(f"Configuration validated for agent: {self.POD_NAME}")

    @property
    def processing_list(self) -> str:
        return f"{self.PROCESSING_LIST_PREFIX}:{self.POD_NAME}"

# =====================================================================
# REDIS CONNECTION
# =====================================================================

def open_redis(config: Config) -> redis.Redis:
    pool = get_redis_pool(
        host=config.REDIS_HOST,
        port=config.REDIS_PORT,
        tls_enabled=config.REDIS_TLS_ENABLED,
        ca_cert_path=config.REDIS_CA_CERT_PATH,
        password_current=config.REDIS_PASS,
        password_next=config.REDIS_PASS_NEXT,
        max_connections=config.REDIS_MAX_CONNECTIONS,
        logger=logger,
    )
    logger.info("Successfully connected to Redis")
    return redis.Redis(connection_pool=pool)


def connect_to_redis(config: Config) -> redis.Redis:
    """Connects to Redis through a pool, exiting on failure."""
    try:
        return open_redis(config)
    except Exception as e:
        logger.error(f"FATAL: Could not connect to Redis: {e}")
        sys.exit(1)


def build_backend(config: Config, redis_client: Optional[redis.Redis]):
    if config.VAR_STORE_BACKEND == 'redis':
        return RedisVariableBackend(redis_client, prefix=config.VAR_STORE_PREFIX)
    return FileVariableBackend(config.VAR_STORE_DIR)

# =====================================================================
# TICK SOURCES
# =====================================================================

class TickSource:
    """Emits "tick:<monitor>" events for every monitor with `every` set."""

    def __init__(self, engine: RuleEngine, scheduler: Scheduler):
        self.engine = engine
        self.scheduler = scheduler
        self.intervals = {m.name: m.every for m in engine.monitors if m.every}
        self._stopped = False

    def start(self, now: Optional[float] = None) -> None:
        if now is None:
            now = self.scheduler.now()
        for name, interval in self.intervals.items():
            self.scheduler.schedule(now + interval, self, name)
            logger.info(f"Tick source for {name} every {interval:g}s")

    def stop(self) -> None:
        self._stopped = True

    def on_timer(self, name: str, now: float) -> None:
        if self._stopped:
            return
        METRIC_TICKS_TOTAL.labels(monitor=name).inc()
        try:
            self.engine.on_event(f"tick:{name}", {}, now)
        finally:
            self.scheduler.schedule(now + self.intervals[name], self, name)

# =====================================================================
# RUNTIME
# =====================================================================

class AgentRuntime:
    """
    Wires the rule set into a running pipeline.

    Usage:
        runtime = AgentRuntime(load_file(path), FileVariableBackend())
        runtime.start()
        runtime.process_message('{"source": "resource:cpu", "fields": {"usage": "97"}}')
        runtime.shutdown(grace=10)
    """

    def __init__(self, ruleset: RuleSet, backend=None, clock=None, worker: Optional[DispatchWorker] = None,
                 host: Optional[str] = None, **engine_kwargs):
        self.ruleset = ruleset
        self.redis_client: Optional[redis.Redis] = None
        self.scheduler = Scheduler(clock or SystemClock())
        self.store = VariableStore(ruleset.variables, backend=backend)
        self.worker = worker or DispatchWorker()
        self.rate_limiter = RateLimiter(self.scheduler, release=self.worker.submit)
        self.aggregator = NotificationAggregator(ruleset.cascade, self.scheduler, self.rate_limiter)
        self.engine = RuleEngine(ruleset.monitors, self.store, self.aggregator, self.scheduler,
                                 host=host, **engine_kwargs)
        self.ticks = TickSource(self.engine, self.scheduler)
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

    def use_redis(self, redis_client: redis.Redis) -> None:
        """Point the health check and a Redis variable backend at a (re)connected client."""
        self.redis_client = redis_client
        if isinstance(self.store.backend, RedisVariableBackend):
            self.store.backend.redis_client = redis_client

    def start(self, threads: bool = True) -> None:
        self.store.load_persistent()
        self.ticks.start()
        if threads:
            self.worker.start()
            self.scheduler.start()

    def process_message(self, message_string: str) -> bool:
        """Parse and evaluate one queue message; False if it was discarded."""
        try:
            message = json.loads(message_string)
            source, fields, timestamp = self._parse_message(message)
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            logger.error(f"Discarding invalid event message: {e}; message={message_string[:MESSAGE_PREVIEW_LENGTH]}")
            METRIC_MESSAGES_TOTAL.labels(status='invalid').inc()
            return False

        try:
            self.engine.on_event(source, fields, timestamp)
        except Exception as e:
            logger.error(f"Error evaluating event from {source}: {e}", exc_info=True)
            METRIC_MESSAGES_TOTAL.labels(status='error').inc()
            return False

        METRIC_MESSAGES_TOTAL.labels(status='processed').inc()
        return True

    @staticmethod
    def _parse_message(message: Any) -> Tuple[str, Dict[str, str], Optional[float]]:
        if not isinstance(message, dict):
            raise ValueError("message must be a JSON object")
        source = message.get('source')
        if not isinstance(source, str) or ':' not in source:
            raise ValueError(f"`source` must look like kind:target, got {source!r}")
        fields = message.get('fields', {})
        if not isinstance(fields, dict):
            raise ValueError("`fields` must be an object")
        timestamp = message.get('timestamp')
        if timestamp is not None and (isinstance(timestamp, bool) or not isinstance(timestamp, (int, float))):
            raise ValueError(f"`timestamp` must be a number, got {timestamp!r}")
        return source, {str(k): str(v) for k, v in fields.items()}, timestamp

    def health(self, redis_client: Optional[redis.Redis] = None) -> Tuple[bool, int, Dict[str, Any]]:
        body: Dict[str, Any] = {"service": SERVICE_NAME, "version": SERVICE_VERSION}
        errors = []
        if redis_client is None:
            redis_client = self.redis_client
        if redis_client is not None:
            try:
                redis_client.ping()
            except Exception as e:
                errors.append(f"Redis: {e}")

        if errors:
            body.update(status="unhealthy", errors=errors)
            return False, 503, body

        if self.store.load_failures:
            body.update(status="degraded", degraded_variables=dict(self.store.load_failures))
        else:
            body.update(status="healthy")
        body.update(pending_notifications=self.rate_limiter.pending() + self.worker.pending())
        return True, 200, body

    def shutdown(self, grace: float = 10.0, sleep=time.sleep) -> None:
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        deadline = self.scheduler.now() + grace
        self.ticks.stop()

        flushed = self.aggregator.flush_all()
        logger.info(f"Flushed {flushed} aggregation bucket(s)")

        unsent = self.rate_limiter.drain(deadline, sleep=sleep)
        if unsent:
            logger.warning(f"{unsent} notification(s) still rate limited at shutdown")

        saved = self.store.save_all()
        logger.info(f"Persisted {saved} variable(s)")

        self.worker.stop(timeout=max(0.0, deadline - self.scheduler.now()) or 1.0)
        self.scheduler.stop()

# =====================================================================
# HEALTH CHECK HTTP SERVER
# =====================================================================

class HealthCheckHandler(BaseHTTPRequestHandler):
    """Simple HTTP handler for health checks."""

    health_check_fn = None

    def do_GET(self):
        if self.path == '/health':
            try:
                is_healthy, status_code, response = self.health_check_fn()

                self.send_response(status_code)
                self.send_header('Content-Type', 'application/json')
                self.end_headers()
                self.wfile.write(json.dumps(response).encode())

            except Exception as e:
                self.send_response(503)
                self.send_header('Content-Type', 'application/json')
                self.end_headers()
                self.wfile.write(json.dumps({
                    "status": "unhealthy",
                    "error": str(e)
                }).encode())
        else:
            self.send_response(404)
            self.end_headers()

    def log_message(self, format, *args):
        pass


def start_health_server(config: Config, runtime: AgentRuntime) -> threading.Thread:
    """Starts HTTP health check server in background thread."""

    def health_check():
        healthy, status_code, body = runtime.health()
        body["pod"] = config.POD_NAME
        return healthy, status_code, body

    HealthCheckHandler.health_check_fn = staticmethod(health_check)

    def run_server():
        server = HTTPServer(('0.0.0.0', config.HEALTH_PORT), HealthCheckHandler)
        logger.info(f"Health check server started on port {config.HEALTH_PORT}")
        server.serve_forever()

    thread = threading.Thread(target=run_server, daemon=True, name="HealthCheckServer")
    thread.start()
    return thread

# =====================================================================
# GRACEFUL SHUTDOWN
# =====================================================================

def cleanup_processing_list(config: Config, redis_client: redis.Redis) -> int:
    """Move messages from our processing list back to the event queue."""
    processing_list = config.processing_list

    try:
        logger.info(f"Cleaning up processing list: {processing_list}")

        moved = 0
        while True:
            msg = redis_client.rpoplpush(processing_list, config.EVENT_QUEUE_NAME)
            if msg is None:
                break
            moved += 1

        logger.info(f"Moved {moved} messages from processing list back to event queue")
        return moved

    except redis.exceptions.RedisError as e:
        logger.error(f"Error cleaning up processing list: {e}")
        return 0


def reconnect_with_backoff(connect_fn, max_retries=10, sleep=time.sleep):
    """Reconnect to a service with exponential backoff."""
    retry_count = 0

    while retry_count < max_retries:
        try:
            return connect_fn()
        except Exception as e:
            retry_count += 1
            if retry_count >= max_retries:
                logger.error(f"Max reconnection attempts ({max_retries}) reached. Giving up.")
                raise

            wait_time = min(2 ** retry_count, 60)
            logger.error(
                f"Reconnection attempt {retry_count}/{max_retries} failed: {e}. "
                f"Waiting {wait_time}s..."
            )
            sleep(wait_time)


def _update_processing_depth(redis_client: redis.Redis, processing_list: str) -> None:
    try:
        METRIC_PROCESSING_LIST_DEPTH.set(redis_client.llen(processing_list))
    except redis.exceptions.RedisError as e:
        logger.debug(f"Could not read processing list depth: {e}")

# =====================================================================
# MAIN SERVICE LOOP
# =====================================================================

def main():
    """Main service entry point."""

    setup_json_logging(service_name=SERVICE_NAME, version=SERVICE_VERSION,
                       level=os.environ.get('LOG_LEVEL', 'INFO'))

    # --- 1. Load Config, Rule Set and Connections ---
    config = Config()

    try:
        ruleset = load_file(config.RAMON_CONFIG)
    except ConfigurationError as e:
        logger.error(f"FATAL: Invalid rule set: {e}")
        sys.exit(1)

    redis_client = connect_to_redis(config)
    runtime = AgentRuntime(ruleset, build_backend(config, redis_client))
    runtime.use_redis(redis_client)

    # Recover anything a previous run left in our processing list.
    cleanup_processing_list(config, redis_client)

    # --- 2. Start Background Services ---
    stop_event = threading.Event()

    start_http_server(config.METRICS_PORT)
    logger.info(f"Prometheus metrics server started on port {config.METRICS_PORT}")

    start_health_server(config, runtime)
    runtime.start()

    # --- 3. Register Signal Handlers ---
    def graceful_shutdown(signum, frame):
        sig_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.warning(f"{sig_name} received. Initiating graceful shutdown...")

        stop_event.set()
        runtime.shutdown(grace=config.SHUTDOWN_GRACE_SECONDS)
        cleanup_processing_list(config, runtime.redis_client)

        logger.info("Shutdown complete. Exiting.")
        sys.exit(0)

    signal.signal(signal.SIGTERM, graceful_shutdown)
    signal.signal(signal.SIGINT, graceful_shutdown)

    # --- 4. Main Processing Loop ---
    logger.info("=" * 70)
    logger.info(f"RAMON Agent v{SERVICE_VERSION} - Pod: {config.POD_NAME}")
    logger.info("=" * 70)
    logger.info(f"Rule set: {config.RAMON_CONFIG} ({len(ruleset.monitors)} monitors, "
                f"{len(ruleset.variables)} variables)")
    logger.info(f"Event queue: {config.EVENT_QUEUE_NAME}")
    logger.info("=" * 70)
    logger.info("Agent is now running. Waiting for events...")

    processing_list = config.processing_list

    while not stop_event.is_set():
        message_string = None
        try:
            # --- Atomically pop from the event queue and push to our processing list ---
            message_string = redis_client.brpoplpush(
                config.EVENT_QUEUE_NAME,
                processing_list,
                timeout=config.BRPOPLPUSH_TIMEOUT
            )

            if message_string is None:
                _update_processing_depth(redis_client, processing_list)
                continue

            runtime.process_message(message_string)

            # Processed or discarded, the message leaves the processing list either way.
            redis_client.lrem(processing_list, 1, message_string)
            _update_processing_depth(redis_client, processing_list)

        except redis.exceptions.ConnectionError as e:
            logger.error(f"Redis connection lost! Reconnecting... {e}")
            try:
                redis_client = reconnect_with_backoff(lambda: open_redis(config))
                runtime.use_redis(redis_client)
            except Exception as reconnect_error:
                logger.error(f"Failed to reconnect to Redis: {reconnect_error}")
                logger.error("Exiting service - requires manual intervention")
                runtime.shutdown(grace=config.SHUTDOWN_GRACE_SECONDS)
                sys.exit(1)

        except Exception as e:
            logger.error(f"CRITICAL: Unhandled error in main loop: {e}", exc_info=True)
            if message_string:
                logger.error(f"Last message: {message_string[:MESSAGE_PREVIEW_LENGTH]}")
            time.sleep(1)

# =====================================================================
# SERVICE ENTRY POINT
# =====================================================================

if __name__ == "__main__":
    main()
