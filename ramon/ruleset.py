#!/usr/bin/env python3
"""
=====================================================================
RAMON Rule Set Loader
=====================================================================
Builds the immutable rule set (variables, notification cascade and
monitors) from a TOML document.

Every problem is a ConfigurationError raised at load time: unknown
keys, invalid literals, invalid patterns, undeclared variables and
notification categories whose settings cannot be resolved. The agent
does not start with a broken rule set.

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import logging
import re
from typing import Any, List, Mapping, Optional, Tuple

import toml

from ramon.cascade import ConfigCascade
from ramon.conditions import parse_condition
from ramon.literals import ConfigurationError, parse_duration, parse_rate
from ramon.rules import Action, EventFilter, Monitor
from ramon.variables import DEFAULT_CAPACITY, Variable

logger = logging.getLogger(__name__)

ROOT_KEYS = ('var', 'notify', 'monitor')
VARIABLE_KEYS = ('length', 'store')
ACTION_KEYS = ('if', 'push', 'notify', 'title', 'exec')

# Monitor key -> event source kind.
SOURCE_KEYS = {
    'log': 'log',
    'service': 'service',
    'resource': 'resource',
    'watch': 'file',
    'http': 'http',
    'port': 'port',
}

MONITOR_KEYS = tuple(SOURCE_KEYS) + (
    'every', 'match_log', 'ignore_log', 'match_field', 'if',
    'duration', 'cooldown', 'threshold', 'notify', 'action',
)


def validate_keys(table: Mapping[str, Any], valid_keys, where: str) -> None:
    for key in table:
        if key not in valid_keys:
            raise ConfigurationError(f"{where}: invalid key `{key}`")


def _table(value: Any, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"{where} must be a table")
    return value


def _string(value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise ConfigurationError(f"{where} must be a string, got {value!r}")
    return value


def _compile(pattern: Any, where: str) -> re.Pattern:
    try:
        return re.compile(_string(pattern, where))
    except re.error as e:
        raise ConfigurationError(f"{where}: invalid pattern: {e}") from None


class RuleSet:
    """Everything the runtime needs, built once from the TOML document."""

    def __init__(self, variables: List[Variable], cascade: ConfigCascade, monitors: List[Monitor]):
        self.variables = variables
        self.cascade = cascade
        self.monitors = monitors

    def monitor(self, name: str) -> Monitor:
        for monitor in self.monitors:
            if monitor.name == name:
                return monitor
        raise KeyError(f"Unknown monitor: {name}")

    def categories(self) -> List[Tuple[str, str]]:
        """Every (category, monitor) pair a notify directive can produce."""
        return [(action.notify, m.name) for m in self.monitors for action in m.actions if action.notify]

    def __repr__(self) -> str:
        return f"RuleSet({len(self.variables)} variables, {len(self.monitors)} monitors)"


# =====================================================================
# LOADING
# =====================================================================

def load_file(path: str) -> RuleSet:
    try:
        with open(path, 'rb') as f:
            document = f.read()
    except OSError as e:
        raise ConfigurationError(f"Cannot read rule set {path}: {e}") from None

    try:
        table = toml.loads(document.decode('utf-8'))
    except UnicodeDecodeError as e:
        raise ConfigurationError(f"{path}: not valid UTF-8: {e}") from None
    except toml.TomlDecodeError as e:
        raise ConfigurationError(f"{path}: {e}") from None

    ruleset = build(table)
    logger.info(f"Loaded {ruleset!r} from {path}")
    return ruleset


def loads(document: str) -> RuleSet:
    try:
        table = toml.loads(document)
    except toml.TomlDecodeError as e:
        raise ConfigurationError(str(e)) from None
    return build(table)


def build(table: Mapping[str, Any]) -> RuleSet:
    validate_keys(table, ROOT_KEYS, "Rule set")

    variables = _build_variables(table.get('var', {}))
    names = {v.name for v in variables}

    notify = dict(_table(table.get('notify', {}), "Key `notify`"))
    types = _table(notify.pop('type', {}), "Key `notify.type`")
    cascade = ConfigCascade(default=notify, types=types)

    if 'monitor' not in table:
        raise ConfigurationError("No monitors found!")
    monitor_tables = _table(table['monitor'], "Key `monitor`")
    if not monitor_tables:
        raise ConfigurationError("No monitors found!")

    monitors = []
    for name, raw in monitor_tables.items():
        monitor_table = _table(raw, f"Monitor `{name}`")
        try:
            monitors.append(_build_monitor(name, monitor_table, names, cascade))
        except ConfigurationError as e:
            if str(e).startswith(f"Monitor `{name}`"):
                raise
            raise ConfigurationError(f"Monitor `{name}`: {e}") from None

    ruleset = RuleSet(variables, cascade, monitors)
    for category, monitor in ruleset.categories():
        cascade.validate(category, monitor)
    return ruleset


def _build_variables(raw: Any) -> List[Variable]:
    variables = []
    for name, spec in _table(raw, "Key `var`").items():
        spec = _table(spec, f"Variable `{name}`")
        validate_keys(spec, VARIABLE_KEYS, f"Variable `{name}`")
        persistent = spec.get('store', False)
        if not isinstance(persistent, bool):
            raise ConfigurationError(f"Variable `{name}`: `store` must be true or false")
        variables.append(Variable(name, spec.get('length', DEFAULT_CAPACITY), persistent=persistent))
    return variables


def _sources(name: str, table: Mapping[str, Any]) -> List[Tuple[str, str]]:
    sources = []
    for key, kind in SOURCE_KEYS.items():
        if key not in table:
            continue
        value = table[key]
        targets = value if isinstance(value, list) else [value]
        for target in targets:
            if isinstance(target, int) and not isinstance(target, bool) and key == 'port':
                target = str(target)
            sources.append((kind, _string(target, f"`{key}`")))
    if 'every' in table:
        sources.append(('tick', name))
    if not sources:
        raise ConfigurationError(
            f"Monitor `{name}` has no event source (one of {', '.join(SOURCE_KEYS)}, every)"
        )
    return sources


def _optional_duration(table: Mapping[str, Any], key: str) -> Optional[float]:
    if key not in table:
        return None
    try:
        return parse_duration(table[key])
    except ConfigurationError as e:
        raise ConfigurationError(f"`{key}`: {e}") from None


def _build_monitor(name: str, table: Mapping[str, Any], variables, cascade: ConfigCascade) -> Monitor:
    validate_keys(table, MONITOR_KEYS, f"Monitor `{name}`")

    event_filter = EventFilter(_sources(name, table))
    pattern = _compile(table['match_log'], "`match_log`") if 'match_log' in table else None
    ignore_pattern = _compile(table['ignore_log'], "`ignore_log`") if 'ignore_log' in table else None
    match_field = _string(table.get('match_field', 'line'), "`match_field`")

    every = _optional_duration(table, 'every')
    if every is not None and every <= 0:
        raise ConfigurationError("`every` must be greater than 0s")

    threshold = None
    if 'threshold' in table:
        try:
            threshold = parse_rate(table['threshold'])
        except ConfigurationError as e:
            raise ConfigurationError(f"`threshold`: {e}") from None

    if 'notify' in table:
        cascade.add_monitor_layer(name, _table(table['notify'], "`notify`"))

    raw_actions = table.get('action', [])
    if isinstance(raw_actions, dict):
        raw_actions = [raw_actions]
    if not isinstance(raw_actions, list) or not raw_actions:
        raise ConfigurationError("at least one [[action]] block is required")

    actions = [
        _build_action(i, _table(raw, f"Action {i + 1}"), variables)
        for i, raw in enumerate(raw_actions)
    ]

    return Monitor(
        name,
        event_filter,
        pattern=pattern,
        ignore_pattern=ignore_pattern,
        match_field=match_field,
        condition=parse_condition(table.get('if'), variables),
        duration=_optional_duration(table, 'duration'),
        cooldown=_optional_duration(table, 'cooldown'),
        threshold=threshold,
        actions=actions,
        every=every,
    )


def _build_action(index: int, table: Mapping[str, Any], variables) -> Action:
    where = f"Action {index + 1}"
    validate_keys(table, ACTION_KEYS, where)

    pushes = []
    for variable, template in _table(table.get('push', {}), f"{where}: `push`").items():
        if variable not in variables:
            raise ConfigurationError(f"{where}: push to unknown variable `{variable}`")
        pushes.append((variable, _string(template, f"{where}: push value for `{variable}`")))

    notify = table.get('notify')
    if notify is not None:
        _string(notify, f"{where}: `notify`")
    title = table.get('title')
    if title is not None:
        _string(title, f"{where}: `title`")
        if notify is None:
            raise ConfigurationError(f"{where}: `title` without `notify`")

    exec_command = table.get('exec')
    if exec_command is not None:
        if isinstance(exec_command, list):
            if not exec_command or not all(isinstance(arg, str) for arg in exec_command):
                raise ConfigurationError(f"{where}: `exec` must be a command string or a non-empty list of strings")
        else:
            _string(exec_command, f"{where}: `exec`")

    try:
        condition = parse_condition(table.get('if'), variables)
    except ConfigurationError as e:
        raise ConfigurationError(f"{where}: {e}") from None

    return Action(condition=condition, pushes=pushes, notify=notify, title=title, exec_command=exec_command)
