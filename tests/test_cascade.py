#!/usr/bin/env python3
"""
Unit tests for the notification config cascade.
"""

import pytest

from ramon.cascade import AggregationMode, ConfigCascade, normalize_layer
from ramon.literals import ConfigurationError, Schedule

pytestmark = pytest.mark.unit


class TestLayering:
    """Tests for monitor > type > default > built-in resolution"""

    def test_builtin_defaults(self):
        config = ConfigCascade().resolve("anything")
        assert config.transport == "log"
        assert config.aggregate == 0.0
        assert config.aggregate_by == "category"
        assert config.mode == AggregationMode.IMMEDIATE
        assert config.limit is None

    def test_default_layer(self):
        config = ConfigCascade(default={"limit": "4/m"}).resolve("warn")
        assert config.limit == (4, 60.0)

    def test_type_overrides_default(self, cascade):
        assert cascade.resolve("critical").aggregate == 0.0
        assert cascade.resolve("warn").aggregate == 10.0

    def test_unset_type_fields_inherit(self, cascade):
        assert cascade.resolve("critical").aggregate_timeout == 60.0

    def test_monitor_overrides_type(self, cascade):
        cascade.add_monitor_layer("ssh", {"aggregate": "30s"})
        assert cascade.resolve("critical", monitor="ssh").aggregate == 30.0
        assert cascade.resolve("critical", monitor="other").aggregate == 0.0
        assert cascade.resolve("critical").aggregate == 0.0

    def test_lookup_first_present_wins(self):
        cascade = ConfigCascade(
            default={"to": "ops@example.com"},
            types={"critical": {"to": ["oncall@example.com", "boss@example.com"]}},
            monitors={"ssh": {"from": "ramon@example.com"}},
        )
        assert cascade.lookup("to", "critical", "ssh") == ("oncall@example.com", "boss@example.com")
        assert cascade.lookup("to", "warn", "ssh") == ("ops@example.com",)
        assert cascade.lookup("from", "warn", "ssh") == "ramon@example.com"
        assert cascade.lookup("smtp_host", "warn", "ssh") is None

    def test_resolution_is_cached(self, cascade):
        assert cascade.resolve("warn") is cascade.resolve("warn")

    def test_monitor_layer_invalidates_cache(self, cascade):
        before = cascade.resolve("warn", "ssh")
        cascade.add_monitor_layer("ssh", {"aggregate": "0s"})
        after = cascade.resolve("warn", "ssh")
        assert before is not after
        assert after.mode == AggregationMode.IMMEDIATE


class TestModes:
    """Tests for mode selection"""

    def test_window(self, cascade):
        assert cascade.resolve("warn").mode == AggregationMode.WINDOW

    def test_schedule_wins_over_window(self, cascade):
        config = cascade.resolve("digest")
        assert config.mode == AggregationMode.SCHEDULE
        assert isinstance(config.schedule, Schedule)


class TestNormalization:
    """Tests for parsing and rejecting layer values"""

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError, match="invalid key `agregate`"):
            normalize_layer({"agregate": "10s"}, "[notify]")

    @pytest.mark.parametrize("key,value", [
        ("limit", "4 per minute"),
        ("aggregate", "ten seconds"),
        ("schedule", "whenever"),
        ("transport", "pigeon"),
        ("aggregate_by", "host"),
        ("smtp_port", 0),
        ("smtp_starttls", "yes"),
        ("to", 5),
        ("webhook_url", 5),
    ])
    def test_invalid_values(self, key, value):
        with pytest.raises(ConfigurationError):
            normalize_layer({key: value}, "[notify]")

    def test_layer_must_be_table(self):
        with pytest.raises(ConfigurationError):
            ConfigCascade(types={"critical": "loud"})

    def test_error_names_the_layer(self):
        with pytest.raises(ConfigurationError, match=r"\[notify.type.critical\]"):
            ConfigCascade(types={"critical": {"limit": "x"}})


class TestValidation:
    """Tests for required-setting checks"""

    def test_window_needs_timeout(self):
        cascade = ConfigCascade(default={"aggregate": "10s"})
        with pytest.raises(ConfigurationError, match="aggregate_timeout"):
            cascade.validate("warn", "cpu")

    def test_zero_timeout_rejected(self):
        cascade = ConfigCascade(default={"aggregate": "10s", "aggregate_timeout": "0s"})
        with pytest.raises(ConfigurationError, match="greater than 0s"):
            cascade.validate("warn")

    def test_immediate_needs_no_timeout(self):
        assert ConfigCascade().validate("warn").mode == AggregationMode.IMMEDIATE

    def test_webhook_needs_url(self):
        cascade = ConfigCascade(default={"transport": "webhook"})
        with pytest.raises(ConfigurationError, match="webhook_url"):
            cascade.validate("warn")

    def test_smtp_needs_addresses(self):
        cascade = ConfigCascade(default={"transport": "smtp", "smtp_host": "mail"})
        with pytest.raises(ConfigurationError, match="from, to"):
            cascade.validate("warn")

    def test_monitor_named_in_error(self):
        cascade = ConfigCascade(monitors={"ssh": {"transport": "webhook"}})
        with pytest.raises(ConfigurationError, match="for monitor `ssh`"):
            cascade.validate("critical", "ssh")
