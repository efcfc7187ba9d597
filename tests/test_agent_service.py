# =====================================================================
# RAMON Agent Service Unit Tests
# =====================================================================
# Tests for agent_service.py
# Run with: pytest tests/test_agent_service.py -v
# =====================================================================

import json
import os
from unittest.mock import MagicMock, Mock

import pytest
import redis

from conftest import advance
from ramon import agent_service
from ramon.agent_service import AgentRuntime, Config, TickSource, cleanup_processing_list, reconnect_with_backoff
from ramon.dispatchers import DispatchWorker
from ramon.ruleset import loads
from ramon.variables import FileVariableBackend

# Mark all tests in this file as unit tests
pytestmark = pytest.mark.unit


RULES = r"""
[var.ssh_ips]
length = 64
store = true

[notify]
aggregate = "10s"
aggregate_timeout = "1m"

[notify.type.critical]
aggregate = "0s"

[notify.type.throttled]
aggregate = "0s"
limit = "1/m"

[monitor.ssh]
service = "sshd"
match_log = 'Accepted \w+ for (?P<user>\S+) from (?P<ip>\S+)'

[[monitor.ssh.action]]
if = "!ssh_ips = ${ip}"
push = { ssh_ips = "${ip}" }
notify = "critical"
title = "New SSH login from ${ip}"

[[monitor.ssh.action]]
notify = "digest"
title = "SSH login by ${user}"

[monitor.heartbeat]
every = "5m"

[[monitor.heartbeat.action]]
notify = "throttled"
title = "heartbeat"
"""


def login(ip, user="root"):
    return json.dumps({
        "source": "service:sshd",
        "fields": {"line": f"Accepted publickey for {user} from {ip} port 22"},
    })


@pytest.fixture
def sent():
    return []


@pytest.fixture
def runtime(clock, tmp_path, sent):
    def send(category, title, count, occurrences, timestamp):
        sent.append((category, title, count))
        return True

    dispatcher = Mock(transport="log", send=Mock(side_effect=send))
    worker = DispatchWorker(factory=lambda config: dispatcher)
    runtime = AgentRuntime(loads(RULES), FileVariableBackend(str(tmp_path)), clock=clock,
                           worker=worker, host="host")
    runtime.start(threads=False)
    return runtime


class TestConfig:
    """Environment configuration"""

    def test_defaults(self, monkeypatch):
        for key in ("RAMON_CONFIG", "VAR_STORE_BACKEND", "EVENT_QUEUE_NAME", "METRICS_PORT"):
            monkeypatch.delenv(key, raising=False)
        monkeypatch.setenv("POD_NAME", "agent-1")

        config = Config()

        assert config.RAMON_CONFIG == "/etc/ramon.toml"
        assert config.VAR_STORE_BACKEND == "file"
        assert config.METRICS_PORT == 9184
        assert config.processing_list == "ramon:processing:agent-1"

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("RAMON_CONFIG", "/tmp/rules.toml")
        monkeypatch.setenv("VAR_STORE_BACKEND", "Redis")
        monkeypatch.setenv("SHUTDOWN_GRACE_SECONDS", "2.5")

        config = Config()

        assert config.RAMON_CONFIG == "/tmp/rules.toml"
        assert config.VAR_STORE_BACKEND == "redis"
        assert config.SHUTDOWN_GRACE_SECONDS == 2.5

    @pytest.mark.parametrize("key,value", [
        ("VAR_STORE_BACKEND", "sqlite"),
        ("METRICS_PORT", "70000"),
        ("BRPOPLPUSH_TIMEOUT", "0"),
        ("SHUTDOWN_GRACE_SECONDS", "-1"),
        ("REDIS_PORT", "not-a-port"),
    ])
    def test_invalid_values_exit(self, monkeypatch, key, value):
        monkeypatch.setenv(key, value)
        with pytest.raises(SystemExit):
            Config()


class TestProcessMessage:
    """Queue message parsing and evaluation"""

    def test_valid_message_evaluated(self, runtime, sent):
        assert runtime.process_message(login("1.2.3.4")) is True
        runtime.worker.drain()
        assert sent == [("critical", "New SSH login from 1.2.3.4", 1)]
        assert runtime.store.values("ssh_ips") == ["1.2.3.4"]

    @pytest.mark.parametrize("message", [
        "not json",
        "[1, 2]",
        json.dumps({"fields": {"line": "x"}}),
        json.dumps({"source": "nocolon", "fields": {}}),
        json.dumps({"source": "service:sshd", "fields": ["line"]}),
        json.dumps({"source": "service:sshd", "fields": {}, "timestamp": "yesterday"}),
    ])
    def test_invalid_messages_discarded(self, runtime, message):
        assert runtime.process_message(message) is False

    def test_fields_stringified(self, runtime):
        message = json.dumps({"source": "resource:cpu", "fields": {"usage": 97}, "timestamp": 1.5})
        assert runtime.process_message(message) is True

    def test_engine_error_is_contained(self, runtime, caplog):
        runtime.engine.on_event = Mock(side_effect=RuntimeError("boom"))
        assert runtime.process_message(login("1.2.3.4")) is False


class TestHealth:
    """Health endpoint body"""

    def test_healthy(self, runtime, mock_redis_client):
        healthy, status, body = runtime.health(mock_redis_client)
        assert (healthy, status, body["status"]) == (True, 200, "healthy")
        assert body["service"] == "ramon-agent"
        assert body["pending_notifications"] == 0

    def test_redis_down(self, runtime, mock_redis_client):
        mock_redis_client.ping.side_effect = redis.exceptions.ConnectionError("refused")
        healthy, status, body = runtime.health(mock_redis_client)
        assert (healthy, status, body["status"]) == (False, 503, "unhealthy")
        assert "Redis" in body["errors"][0]

    def test_uses_bound_client(self, runtime, mock_redis_client):
        runtime.use_redis(mock_redis_client)
        mock_redis_client.ping.side_effect = redis.exceptions.ConnectionError("refused")
        assert runtime.health()[1] == 503

    def test_degraded_when_variable_not_loaded(self, clock):
        runtime = AgentRuntime(loads(RULES), backend=None, clock=clock, host="host")
        runtime.start(threads=False)
        healthy, status, body = runtime.health()
        assert (healthy, status, body["status"]) == (True, 200, "degraded")
        assert "ssh_ips" in body["degraded_variables"]


class TestShutdown:
    """Flush, drain and persist on shutdown"""

    def test_flushes_open_buckets(self, runtime, clock, sent):
        runtime.process_message(login("1.2.3.4", "alice"))
        runtime.process_message(login("1.2.3.4", "bob"))
        runtime.worker.drain()
        sent.clear()

        runtime.shutdown(grace=10, sleep=clock.advance)
        runtime.worker.drain()

        assert sent == [("digest", "SSH login by alice\nSSH login by bob", 2)]

    def test_persists_variables(self, runtime, clock, tmp_path):
        runtime.process_message(login("1.2.3.4"))
        runtime.process_message(login("5.6.7.8"))
        runtime.shutdown(grace=10, sleep=clock.advance)

        with open(os.path.join(str(tmp_path), "var_ssh_ips")) as f:
            assert f.read().splitlines() == ["1.2.3.4", "5.6.7.8"]

    def test_variables_reload_on_restart(self, runtime, clock, tmp_path):
        runtime.process_message(login("1.2.3.4"))
        runtime.shutdown(grace=0, sleep=clock.advance)

        restarted = AgentRuntime(loads(RULES), FileVariableBackend(str(tmp_path)), clock=clock, host="host")
        restarted.start(threads=False)
        assert restarted.store.contains("ssh_ips", "1.2.3.4")

    def test_rate_limited_notifications_drained_within_grace(self, runtime, clock, sent):
        for _ in range(3):
            runtime.engine.on_event("tick:heartbeat")
        assert runtime.rate_limiter.pending() == 2

        runtime.shutdown(grace=150, sleep=clock.advance)
        runtime.worker.drain()

        assert [s[0] for s in sent] == ["throttled"] * 3

    def test_grace_period_bounds_drain(self, runtime, clock, sent):
        for _ in range(3):
            runtime.engine.on_event("tick:heartbeat")

        runtime.shutdown(grace=90, sleep=clock.advance)

        assert runtime.rate_limiter.pending() == 1

    def test_idempotent(self, runtime, clock):
        runtime.aggregator.flush_all = Mock(return_value=0)
        runtime.shutdown(grace=0, sleep=clock.advance)
        runtime.shutdown(grace=0, sleep=clock.advance)
        assert runtime.aggregator.flush_all.call_count == 1


class TestTickSource:
    """Tick events for `every` monitors"""

    def test_ticks_on_interval(self, clock, scheduler):
        ruleset = loads(RULES)
        engine = Mock(monitors=ruleset.monitors)
        ticks = TickSource(engine, scheduler)
        ticks.start()

        advance(clock, scheduler, 15 * 60, step=60)

        assert engine.on_event.call_count == 3
        assert engine.on_event.call_args[0][0] == "tick:heartbeat"

    def test_stop_ends_ticks(self, clock, scheduler):
        engine = Mock(monitors=loads(RULES).monitors)
        ticks = TickSource(engine, scheduler)
        ticks.start()
        ticks.stop()
        advance(clock, scheduler, 600, step=60)
        engine.on_event.assert_not_called()


class TestProcessingList:
    """BRPOPLPUSH recovery helpers"""

    def test_cleanup_moves_everything_back(self, monkeypatch, mock_redis_client):
        monkeypatch.setenv("POD_NAME", "agent-1")
        mock_redis_client.rpoplpush.side_effect = ["m1", "m2", None]

        moved = cleanup_processing_list(Config(), mock_redis_client)

        assert moved == 2
        mock_redis_client.rpoplpush.assert_called_with("ramon:processing:agent-1", "ramon:events")

    def test_cleanup_redis_error(self, mock_redis_client):
        mock_redis_client.rpoplpush.side_effect = redis.exceptions.ConnectionError("gone")
        assert cleanup_processing_list(Config(), mock_redis_client) == 0


class TestReconnect:
    """Exponential backoff"""

    def test_succeeds_after_failures(self):
        waits = []
        connect = MagicMock(side_effect=[redis.exceptions.ConnectionError("x"),
                                         redis.exceptions.ConnectionError("x"), "client"])
        assert reconnect_with_backoff(connect, sleep=waits.append) == "client"
        assert waits == [2, 4]

    def test_gives_up(self):
        waits = []
        connect = MagicMock(side_effect=redis.exceptions.ConnectionError("x"))
        with pytest.raises(redis.exceptions.ConnectionError):
            reconnect_with_backoff(connect, max_retries=3, sleep=waits.append)
        assert connect.call_count == 3
        assert waits == [2, 4]


class TestBackendSelection:
    """Variable persistence backend from config"""

    def test_file_backend(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VAR_STORE_DIR", str(tmp_path))
        backend = agent_service.build_backend(Config(), None)
        assert isinstance(backend, FileVariableBackend)

    def test_redis_backend(self, monkeypatch, mock_redis_client):
        monkeypatch.setenv("VAR_STORE_BACKEND", "redis")
        backend = agent_service.build_backend(Config(), mock_redis_client)
        assert backend.redis_client is mock_redis_client


class TestReconnectRebinding:
    """A reconnected client replaces the old one everywhere"""

    def test_redis_backend_and_health_follow_new_client(self, monkeypatch, clock):
        monkeypatch.setenv("VAR_STORE_BACKEND", "redis")
        old_client, new_client = MagicMock(), MagicMock()
        old_client.ping.side_effect = redis.exceptions.ConnectionError("gone")
        runtime = AgentRuntime(loads(RULES), agent_service.build_backend(Config(), old_client),
                               clock=clock, host="host")
        runtime.use_redis(old_client)
        assert runtime.health()[1] == 503

        runtime.use_redis(new_client)

        assert runtime.store.backend.redis_client is new_client
        assert runtime.health()[1] == 200
        new_client.ping.assert_called_once()
