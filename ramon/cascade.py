#!/usr/bin/env python3
"""
=====================================================================
RAMON Notification Config Cascade
=====================================================================
Resolves the effective notification settings for a category by
checking, first present wins:

    1. the monitor's [monitor.<name>.notify] table
    2. the category's [notify.type.<category>] table
    3. the [notify] default table
    4. built-in defaults

Literal values (rates, durations, schedules) are parsed once when a
layer is added, so resolution never fails at runtime. Results are
cached per (category, monitor).

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import threading
from typing import Any, Dict, Mapping, Optional, Tuple

from ramon.literals import ConfigurationError, Schedule, parse_duration, parse_rate

SETTINGS = (
    'transport',
    'webhook_url',
    'webhook_timeout',
    'smtp_host',
    'smtp_port',
    'smtp_starttls',
    'from',
    'to',
    'limit',
    'aggregate',
    'aggregate_timeout',
    'schedule',
    'aggregate_by',
)

TRANSPORTS = ('log', 'webhook', 'smtp')
AGGREGATE_BY = ('category', 'monitor')

BUILTIN_DEFAULTS = {
    'transport': 'log',
    'aggregate': 0.0,
    'aggregate_by': 'category',
    'webhook_timeout': 10.0,
    'smtp_port': 25,
    'smtp_starttls': False,
}


class AggregationMode:
    """Enum-like class for aggregation modes."""
    IMMEDIATE = "immediate"
    WINDOW = "window"
    SCHEDULE = "schedule"


def normalize_layer(raw: Optional[Mapping[str, Any]], where: str) -> Dict[str, Any]:
    """Validate one layer's keys and parse its literals."""
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{where} must be a table")

    layer: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in SETTINGS:
            raise ConfigurationError(f"{where}: invalid key `{key}`")
        try:
            layer[key] = _parse_setting(key, value)
        except ConfigurationError as e:
            raise ConfigurationError(f"{where}: {e}") from None
    return layer


def _parse_setting(key: str, value: Any) -> Any:
    if key == 'limit':
        return parse_rate(value)
    if key in ('aggregate', 'aggregate_timeout', 'webhook_timeout'):
        return parse_duration(value)
    if key == 'schedule':
        return Schedule.parse(value)
    if key == 'transport':
        if value not in TRANSPORTS:
            raise ConfigurationError(f"transport must be one of {', '.join(TRANSPORTS)}, got {value!r}")
        return value
    if key == 'aggregate_by':
        if value not in AGGREGATE_BY:
            raise ConfigurationError(f"aggregate_by must be one of {', '.join(AGGREGATE_BY)}, got {value!r}")
        return value
    if key == 'smtp_port':
        if not isinstance(value, int) or not 0 < value < 65536:
            raise ConfigurationError(f"smtp_port invalid: {value!r}")
        return value
    if key == 'smtp_starttls':
        if not isinstance(value, bool):
            raise ConfigurationError(f"smtp_starttls must be true or false, got {value!r}")
        return value
    if key == 'to':
        recipients = [value] if isinstance(value, str) else value
        if not isinstance(recipients, list) or not all(isinstance(r, str) for r in recipients):
            raise ConfigurationError(f"`to` must be an address or a list of addresses, got {value!r}")
        return tuple(recipients)
    if not isinstance(value, str):
        raise ConfigurationError(f"`{key}` must be a string, got {value!r}")
    return value


class NotificationConfig:
    """Effective settings for one (category, monitor) pair."""

    def __init__(self, category: str, settings: Mapping[str, Any]):
        self.category = category
        self.settings = dict(settings)
        self.transport = self.settings.get('transport')
        self.webhook_url = self.settings.get('webhook_url')
        self.webhook_timeout = self.settings.get('webhook_timeout')
        self.smtp_host = self.settings.get('smtp_host')
        self.smtp_port = self.settings.get('smtp_port')
        self.smtp_starttls = self.settings.get('smtp_starttls')
        self.sender = self.settings.get('from')
        self.recipients = self.settings.get('to') or ()
        self.limit: Optional[Tuple[int, float]] = self.settings.get('limit')
        self.aggregate = self.settings.get('aggregate') or 0.0
        self.aggregate_timeout = self.settings.get('aggregate_timeout')
        self.schedule: Optional[Schedule] = self.settings.get('schedule')
        self.aggregate_by = self.settings.get('aggregate_by')

    @property
    def mode(self) -> str:
        if self.schedule is not None:
            return AggregationMode.SCHEDULE
        if self.aggregate > 0:
            return AggregationMode.WINDOW
        return AggregationMode.IMMEDIATE

    def transport_key(self) -> Tuple:
        """Identifies the delivery target, so dispatchers can be shared."""
        return (self.transport, self.webhook_url, self.webhook_timeout, self.smtp_host,
                self.smtp_port, self.smtp_starttls, self.sender, tuple(self.recipients))

    def __repr__(self) -> str:
        return f"NotificationConfig(category={self.category!r}, transport={self.transport!r}, mode={self.mode})"


class ConfigCascade:
    """
    Layered notification settings: monitor > type > default > built-in.

    Usage:
        cascade = ConfigCascade(default={"limit": "4/m"},
                                types={"critical": {"aggregate": "0s"}})
        cascade.add_monitor_layer("ssh", {"to": "ops@example.com"})
        config = cascade.resolve("critical", monitor="ssh")
    """

    def __init__(
        self,
        default: Optional[Mapping[str, Any]] = None,
        types: Optional[Mapping[str, Mapping[str, Any]]] = None,
        monitors: Optional[Mapping[str, Mapping[str, Any]]] = None
    ):
        self._default = normalize_layer(default, "[notify]")
        self._types: Dict[str, Dict[str, Any]] = {}
        self._monitors: Dict[str, Dict[str, Any]] = {}
        self._cache: Dict[Tuple[str, Optional[str]], NotificationConfig] = {}
        self._lock = threading.Lock()

        for category, raw in (types or {}).items():
            self._types[category] = normalize_layer(raw, f"[notify.type.{category}]")
        for monitor, raw in (monitors or {}).items():
            self.add_monitor_layer(monitor, raw)

    def add_monitor_layer(self, monitor: str, raw: Optional[Mapping[str, Any]]) -> None:
        self._monitors[monitor] = normalize_layer(raw, f"[monitor.{monitor}.notify]")
        with self._lock:
            self._cache.clear()

    def _layers(self, category: str, monitor: Optional[str]):
        return (
            self._monitors.get(monitor, {}) if monitor else {},
            self._types.get(category, {}),
            self._default,
            BUILTIN_DEFAULTS,
        )

    def lookup(self, key: str, category: str, monitor: Optional[str] = None) -> Any:
        for layer in self._layers(category, monitor):
            if key in layer:
                return layer[key]
        return None

    def resolve(self, category: str, monitor: Optional[str] = None) -> NotificationConfig:
        cache_key = (category, monitor)
        with self._lock:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

        settings = {}
        for key in SETTINGS:
            value = self.lookup(key, category, monitor)
            if value is not None:
                settings[key] = value
        config = NotificationConfig(category, settings)

        with self._lock:
            self._cache[cache_key] = config
        return config

    def validate(self, category: str, monitor: Optional[str] = None) -> NotificationConfig:
        """Resolve and check that every required setting is present."""
        config = self.resolve(category, monitor)
        where = f"Notification `{category}`" + (f" for monitor `{monitor}`" if monitor else "")

        if config.mode == AggregationMode.WINDOW:
            if config.aggregate_timeout is None:
                raise ConfigurationError(f"{where}: `aggregate` is set but no `aggregate_timeout` resolves")
            if config.aggregate_timeout <= 0:
                raise ConfigurationError(f"{where}: `aggregate_timeout` must be greater than 0s")

        if config.transport == 'webhook' and not config.webhook_url:
            raise ConfigurationError(f"{where}: webhook transport requires `webhook_url`")
        if config.transport == 'smtp':
            missing = [k for k, v in (('smtp_host', config.smtp_host), ('from', config.sender),
                                      ('to', config.recipients)) if not v]
            if missing:
                raise ConfigurationError(f"{where}: smtp transport requires {', '.join(missing)}")

        return config
