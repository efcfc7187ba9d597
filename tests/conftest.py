# =====================================================================
# RAMON Pytest Configuration and Fixtures
# =====================================================================
# Shared fixtures: manual clock, scheduler, variable store, a recording
# dispatch worker and mock Redis clients
# =====================================================================

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import redis

from ramon.cascade import ConfigCascade
from ramon.scheduler import ManualClock, Scheduler
from ramon.variables import Variable, VariableStore


# --- Clock & Scheduler ---

@pytest.fixture
def clock():
    """Manual clock starting at a local 2026-01-05 (Monday) 00:00:00."""
    return ManualClock(datetime(2026, 1, 5, 0, 0, 0).timestamp())


@pytest.fixture
def scheduler(clock):
    return Scheduler(clock)


def advance(clock, scheduler, seconds, step=1.0):
    """Move the clock forward in steps, firing due timers along the way."""
    remaining = seconds
    while remaining > 0:
        delta = min(step, remaining)
        clock.advance(delta)
        scheduler.run_pending()
        remaining -= delta


# --- Variables ---

@pytest.fixture
def store():
    return VariableStore([Variable("ssh_ips", 64), Variable("recent", 3)])


# --- Notification pipeline ---

class RecordingRelease:
    """Stands in for DispatchWorker.submit and records release times."""

    def __init__(self, clock):
        self.clock = clock
        self.items = []
        self.times = []

    def __call__(self, item):
        self.items.append(item)
        self.times.append(self.clock.now())


@pytest.fixture
def released(clock):
    return RecordingRelease(clock)


@pytest.fixture
def cascade():
    return ConfigCascade(
        default={"aggregate": "10s", "aggregate_timeout": "1m"},
        types={
            "critical": {"aggregate": "0s"},
            "digest": {"schedule": "8:00AM"},
            "limited": {"aggregate": "0s", "limit": "4/m"},
        },
    )


# --- Redis ---

@pytest.fixture
def mock_redis_client():
    """Mock Redis client"""
    client = MagicMock(spec=redis.Redis)

    client.ping.return_value = True
    client.llen.return_value = 0
    client.lrange.return_value = []
    client.brpoplpush.return_value = None
    client.rpoplpush.return_value = None
    client.lrem.return_value = 1
    client.pipeline.return_value = MagicMock()

    return client


# --- Pytest Configuration ---

def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (mock all external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (requires real services)"
    )
    config.addinivalue_line(
        "markers", "slow: Slow tests (>1 second)"
    )


# --- Helper Functions ---

def assert_log_contains(caplog, level, message_fragment):
    """Assert that logs contain a specific message"""
    for record in caplog.records:
        if record.levelname == level and message_fragment in record.message:
            return True
    raise AssertionError(
        f"Log message containing '{message_fragment}' at level '{level}' not found"
    )
