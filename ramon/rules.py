#!/usr/bin/env python3
"""
=====================================================================
RAMON Rule Engine
=====================================================================
Matches events against monitors and runs their actions.

For every monitor whose filter accepts the event source:

    1. pattern on the match field (default "line"); no match stops,
       an ignore-pattern match stops
    2. match context = ambient fields < event fields < named captures
    3. occurrence threshold ("N/unit"): stop until N matches fall in
       one unit
    4. duration/cooldown gate: the monitor condition feeds a
       DurationTracker; actions run only when it fires. A pending
       tracker also fires from its scheduler deadline.
       Without a gate, a monitor condition simply filters.
    5. actions in declared order: condition -> pushes -> exec -> notify

Events for one monitor are serialized by a per-monitor lock; different
monitors evaluate concurrently.

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import logging
import os
import re
import socket
import subprocess
import threading
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from prometheus_client import Counter

from ramon.aggregator import NotificationRequest
from ramon.conditions import Condition
from ramon.literals import interpolate
from ramon.logging_utils import CorrelationID
from ramon.tracker import DurationTracker, OccurrenceThreshold

logger = logging.getLogger(__name__)

DEFAULT_MATCH_FIELD = 'line'

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_EVENTS_TOTAL = Counter(
    'ramon_events_processed_total',
    'Events delivered to the rule engine',
    ['kind']
)

METRIC_MONITOR_MATCHES = Counter(
    'ramon_monitor_matches_total',
    'Events that matched a monitor pattern',
    ['monitor']
)

METRIC_MONITOR_FIRES = Counter(
    'ramon_monitor_fires_total',
    'Times a monitor ran its actions',
    ['monitor']
)

METRIC_EXEC_TOTAL = Counter(
    'ramon_exec_total',
    'Commands started by exec actions',
    ['monitor', 'status']  # started, failed
)


# =====================================================================
# DATA MODEL
# =====================================================================

class Event:
    """Immutable event: source id "<kind>:<target>", str fields, timestamp."""

    __slots__ = ('source', 'fields', 'timestamp')

    def __init__(self, source: str, fields: Optional[Mapping[str, str]] = None, timestamp: float = 0.0):
        object.__setattr__(self, 'source', source)
        object.__setattr__(self, 'fields', MappingProxyType({k: str(v) for k, v in (fields or {}).items()}))
        object.__setattr__(self, 'timestamp', timestamp)

    def __setattr__(self, name, value):
        raise AttributeError("Event is immutable")

    @property
    def kind(self) -> str:
        return self.source.split(':', 1)[0]

    def __repr__(self) -> str:
        return f"Event({self.source!r}, {dict(self.fields)!r}, {self.timestamp})"


def split_source(source: str) -> Tuple[str, str]:
    kind, _, target = source.partition(':')
    return kind, target


class EventFilter:
    """Accepts sources by (kind, target); `file` targets match by path prefix."""

    def __init__(self, sources: Sequence[Tuple[str, str]]):
        self.sources = list(sources)

    def matches(self, source: str) -> bool:
        kind, target = split_source(source)
        for want_kind, want_target in self.sources:
            if kind != want_kind:
                continue
            if kind == 'file':
                if target == want_target or target.startswith(want_target.rstrip('/') + '/'):
                    return True
            elif target == want_target:
                return True
        return False

    def __repr__(self) -> str:
        return f"EventFilter({', '.join(f'{k}:{t}' for k, t in self.sources)})"


class Action:
    """
    One action block.

    pushes: ordered (variable, template) pairs
    exec_command: shell string (run with sh -c) or argv list
    """

    def __init__(
        self,
        condition: Optional[Condition] = None,
        pushes: Sequence[Tuple[str, str]] = (),
        notify: Optional[str] = None,
        title: Optional[str] = None,
        exec_command: Union[str, List[str], None] = None
    ):
        self.condition = condition
        self.pushes = list(pushes)
        self.notify = notify
        self.title = title
        self.exec_command = exec_command

    def __repr__(self) -> str:
        return f"Action(if={self.condition!r}, push={self.pushes!r}, notify={self.notify!r})"


class Monitor:
    """Immutable after load; all runtime state lives in the RuleEngine."""

    def __init__(
        self,
        name: str,
        event_filter: EventFilter,
        pattern: Optional[re.Pattern] = None,
        ignore_pattern: Optional[re.Pattern] = None,
        match_field: str = DEFAULT_MATCH_FIELD,
        condition: Optional[Condition] = None,
        duration: Optional[float] = None,
        cooldown: Optional[float] = None,
        threshold: Optional[Tuple[int, float]] = None,
        actions: Sequence[Action] = (),
        every: Optional[float] = None
    ):
        self.name = name
        self.event_filter = event_filter
        self.pattern = pattern
        self.ignore_pattern = ignore_pattern
        self.match_field = match_field
        self.condition = condition
        self.duration = duration
        self.cooldown = cooldown
        self.threshold = threshold
        self.actions = list(actions)
        self.every = every

    @property
    def gated(self) -> bool:
        return self.duration is not None or self.cooldown is not None

    def match(self, event: Event) -> Optional[Dict[str, str]]:
        """Named captures when the event matches, None otherwise."""
        text = event.fields.get(self.match_field)

        captures: Dict[str, str] = {}
        if self.pattern is not None:
            if text is None:
                return None
            found = self.pattern.search(text)
            if found is None:
                return None
            for group, value in found.groupdict().items():
                if value is None:
                    logger.warning(f"[{self.name}] Capture group `{group}` was not found.")
                    continue
                captures[group] = value

        if self.ignore_pattern is not None and text is not None and self.ignore_pattern.search(text):
            return None

        return captures

    def __repr__(self) -> str:
        return f"Monitor({self.name!r}, {self.event_filter!r})"


# =====================================================================
# RULE ENGINE
# =====================================================================

class RuleEngine:
    """
    Evaluates every monitor against incoming events.

    Usage:
        engine = RuleEngine(ruleset.monitors, store, aggregator, scheduler)
        engine.on_event("log:/var/log/auth.log", {"line": line}, time.time())
    """

    def __init__(self, monitors: Sequence[Monitor], store, aggregator, scheduler,
                 host: Optional[str] = None, spawn: Callable = subprocess.Popen):
        self.monitors = list(monitors)
        self.store = store
        self.aggregator = aggregator
        self.scheduler = scheduler
        self.host = host or socket.gethostname()
        self.spawn = spawn

        self._locks: Dict[str, threading.Lock] = {m.name: threading.Lock() for m in self.monitors}
        self._thresholds: Dict[str, OccurrenceThreshold] = {
            m.name: OccurrenceThreshold(*m.threshold) for m in self.monitors if m.threshold
        }
        self._trackers: Dict[str, DurationTracker] = {
            m.name: DurationTracker(m.duration or 0.0, m.cooldown or 0.0) for m in self.monitors if m.gated
        }
        self._by_name: Dict[str, Monitor] = {m.name: m for m in self.monitors}
        self._last_context: Dict[str, Dict[str, str]] = {}
        self._armed: Dict[str, float] = {}

    def tracker(self, name: str) -> Optional[DurationTracker]:
        return self._trackers.get(name)

    def on_event(self, source: str, fields: Optional[Mapping[str, str]] = None,
                 timestamp: Optional[float] = None) -> List[str]:
        """Deliver one event; returns the names of monitors that ran their actions."""
        if timestamp is None:
            timestamp = self.scheduler.now()
        return self.process(Event(source, fields, timestamp))

    def process(self, event: Event) -> List[str]:
        METRIC_EVENTS_TOTAL.labels(kind=event.kind).inc()
        fired = []
        for monitor in self.monitors:
            if monitor.event_filter.matches(event.source) and self.evaluate(monitor, event):
                fired.append(monitor.name)
        return fired

    def evaluate(self, monitor: Monitor, event: Event) -> bool:
        previous = CorrelationID.get()
        CorrelationID.set(monitor.name)
        try:
            with self._locks[monitor.name]:
                return self._evaluate_locked(monitor, event)
        finally:
            CorrelationID.set(previous)

    def _evaluate_locked(self, monitor: Monitor, event: Event) -> bool:
        captures = monitor.match(event)
        if captures is None:
            return False
        METRIC_MONITOR_MATCHES.labels(monitor=monitor.name).inc()
        logger.debug(f"Match found for {event.source}")

        context = self.build_context(monitor, event, captures)
        now = self.scheduler.now()

        threshold = self._thresholds.get(monitor.name)
        if threshold is not None and not threshold.record(now):
            logger.debug(f"Occurrence threshold {threshold.count} not reached yet")
            return False

        if monitor.gated:
            holds = monitor.condition is None or monitor.condition.evaluate(context, self.store)
            tracker = self._trackers[monitor.name]
            if holds:
                self._last_context[monitor.name] = context
            if not tracker.observe(holds, now):
                self._arm_tracker(monitor.name, tracker)
                return False
        elif monitor.condition is not None and not monitor.condition.evaluate(context, self.store):
            return False

        self.run_actions(monitor, context, now)
        return True

    def build_context(self, monitor: Monitor, event: Event, captures: Mapping[str, str]) -> Dict[str, str]:
        context = {'host': self.host, 'monitor': monitor.name, 'source': event.source}
        context.update(event.fields)
        context.update(captures)
        return context

    # -----------------------------------------------------------------
    # Duration deadlines
    # -----------------------------------------------------------------

    def _arm_tracker(self, name: str, tracker: DurationTracker) -> None:
        deadline = tracker.pending_deadline()
        if deadline is None or self._armed.get(name) == deadline:
            return
        self._armed[name] = deadline
        self.scheduler.schedule(deadline, self, name)

    def on_timer(self, name: str, now: float) -> None:
        monitor = self._by_name.get(name)
        tracker = self._trackers.get(name)
        if monitor is None or tracker is None:
            return

        previous = CorrelationID.get()
        CorrelationID.set(name)
        try:
            with self._locks[name]:
                self._armed.pop(name, None)
                if tracker.expire(now):
                    logger.info(f"Condition held for {monitor.duration:g}s")
                    context = self._last_context.get(name) or {'host': self.host, 'monitor': name, 'source': ''}
                    self.run_actions(monitor, context, now)
                else:
                    self._arm_tracker(name, tracker)
        finally:
            CorrelationID.set(previous)

    # -----------------------------------------------------------------
    # Actions
    # -----------------------------------------------------------------

    def run_actions(self, monitor: Monitor, context: Mapping[str, str], now: float) -> None:
        METRIC_MONITOR_FIRES.labels(monitor=monitor.name).inc()
        for action in monitor.actions:
            if action.condition is not None and not action.condition.evaluate(context, self.store):
                continue

            for variable, template in action.pushes:
                self.store.push(variable, interpolate(template, context))

            if action.exec_command is not None:
                self._exec(monitor, action.exec_command, context)

            if action.notify is not None:
                title = interpolate(action.title, context) if action.title else monitor.name
                self.aggregator.submit(NotificationRequest(action.notify, title, monitor.name, now), now)

    def _exec(self, monitor: Monitor, command: Union[str, List[str]], context: Mapping[str, str]) -> None:
        args = ['sh', '-c', command] if isinstance(command, str) else list(command)
        env = dict(os.environ)
        env.update(context)
        try:
            process = self.spawn(args, env=env)
        except OSError as e:
            logger.error(f"Failed to start `{args[0]}`: {e}")
            METRIC_EXEC_TOTAL.labels(monitor=monitor.name, status='failed').inc()
            return

        METRIC_EXEC_TOTAL.labels(monitor=monitor.name, status='started').inc()
        threading.Thread(target=self._reap, args=(monitor.name, process), daemon=True,
                         name=f"Exec-{monitor.name}").start()

    @staticmethod
    def _reap(name: str, process) -> None:
        returncode = process.wait()
        if returncode:
            logger.warning(f"[{name}] exec exited with status {returncode}")
