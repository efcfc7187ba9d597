#!/usr/bin/env python3
"""
=====================================================================
RAMON Variable Store
=====================================================================
Process-wide table of named, capacity-bounded ordered sets shared by
every monitor.

- push() appends a value; a value already present moves to the end
- overflow evicts from the front (oldest first) until size == capacity
- each variable has its own lock, so different names never contend
- persistent variables are loaded at start-up and saved after every
  mutation through a pluggable backend (file or Redis)

A persistence failure at start-up is logged, counted and recorded in
load_failures (surfaced by the health endpoint); the variable starts
empty. A save failure is logged and counted and never reaches the
event path.

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import os
import logging
import threading
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

import redis
from prometheus_client import Counter, Gauge

from ramon.literals import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 64

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_VARIABLE_EVICTIONS = Counter(
    'ramon_variable_evictions_total',
    'Values evicted from a variable because it was at capacity',
    ['variable']
)

METRIC_VARIABLE_SIZE = Gauge(
    'ramon_variable_size',
    'Current number of values held by a variable',
    ['variable']
)

METRIC_VARIABLE_LOAD_FAILURES = Counter(
    'ramon_variable_load_failures_total',
    'Persistent variables that could not be loaded at start-up',
    ['variable']
)

METRIC_VARIABLE_SAVE_FAILURES = Counter(
    'ramon_variable_save_failures_total',
    'Failed attempts to persist a variable',
    ['variable']
)


class VariablePersistenceError(Exception):
    """Raised by a backend when a variable cannot be loaded or saved."""
    pass


# =====================================================================
# PERSISTENCE BACKENDS
# =====================================================================

class FileVariableBackend:
    """
    One newline-separated file per variable.

    Writes go to "<file>.new" and are renamed over the old file so a
    crash never leaves a half-written variable behind.
    """

    def __init__(self, directory: str = "/var/cache/ramon"):
        self.directory = directory

    def _path(self, name: str) -> str:
        return os.path.join(self.directory, f"var_{name}")

    def load(self, name: str) -> List[str]:
        path = self._path(name)
        if not os.path.exists(path):
            return []
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return [line.rstrip('\n') for line in f if line.rstrip('\n')]
        except (OSError, UnicodeDecodeError) as e:
            raise VariablePersistenceError(f"Failed to read {path}: {e}") from e

    def save(self, name: str, values: List[str]) -> None:
        path = self._path(name)
        tmp_path = f"{path}.new"
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                for value in values:
                    f.write(value)
                    f.write('\n')
            os.replace(tmp_path, path)
        except OSError as e:
            raise VariablePersistenceError(f"Failed to write {path}: {e}") from e

    def __repr__(self) -> str:
        return f"FileVariableBackend({self.directory!r})"


class RedisVariableBackend:
    """One Redis list per variable ("<prefix>:<name>"), oldest value first."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "ramon:var"):
        self.redis_client = redis_client
        self.prefix = prefix

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    def load(self, name: str) -> List[str]:
        try:
            values = self.redis_client.lrange(self._key(name), 0, -1)
        except redis.exceptions.RedisError as e:
            raise VariablePersistenceError(f"Failed to load {self._key(name)}: {e}") from e
        return [v.decode('utf-8') if isinstance(v, bytes) else v for v in values]

    def save(self, name: str, values: List[str]) -> None:
        key = self._key(name)
        try:
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.delete(key)
            if values:
                pipe.rpush(key, *values)
            pipe.execute()
        except redis.exceptions.RedisError as e:
            raise VariablePersistenceError(f"Failed to save {key}: {e}") from e

    def __repr__(self) -> str:
        return f"RedisVariableBackend(prefix={self.prefix!r})"


# =====================================================================
# VARIABLES
# =====================================================================

class Variable:
    """A named ordered set holding at most `capacity` values."""

    def __init__(self, name: str, capacity: int = DEFAULT_CAPACITY, persistent: bool = False):
        if not isinstance(capacity, int) or isinstance(capacity, bool) or capacity < 1:
            raise ConfigurationError(f"Variable `{name}`: length must be a positive integer, got {capacity!r}")
        self.name = name
        self.capacity = capacity
        self.persistent = persistent
        self.lock = threading.Lock()
        self._values: "OrderedDict[str, None]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Variable({self.name!r}, capacity={self.capacity}, persistent={self.persistent})"


class VariableStore:
    """
    Shared namespace of variables.

    Usage:
        store = VariableStore([Variable("ssh_ips", 64, persistent=True)],
                              backend=FileVariableBackend())
        store.load_persistent()
        if not store.contains("ssh_ips", ip):
            store.push("ssh_ips", ip)
    """

    def __init__(self, variables: Iterable[Variable] = (), backend=None):
        self.backend = backend
        self.load_failures: Dict[str, str] = {}
        self._variables: Dict[str, Variable] = {}
        for variable in variables:
            self.declare(variable)

    def declare(self, variable: Variable) -> None:
        if variable.name in self._variables:
            raise ConfigurationError(f"Variable `{variable.name}` declared twice")
        self._variables[variable.name] = variable
        METRIC_VARIABLE_SIZE.labels(variable=variable.name).set(0)

    def __contains__(self, name: str) -> bool:
        return name in self._variables

    def names(self) -> List[str]:
        return list(self._variables)

    def variable(self, name: str) -> Variable:
        try:
            return self._variables[name]
        except KeyError:
            raise KeyError(f"Unknown variable: {name}") from None

    def contains(self, name: str, value: str) -> bool:
        variable = self.variable(name)
        with variable.lock:
            return value in variable._values

    def values(self, name: str) -> List[str]:
        """Snapshot of a variable, oldest value first."""
        variable = self.variable(name)
        with variable.lock:
            return list(variable._values)

    def push(self, name: str, value: str) -> List[str]:
        """Insert `value` as most recent; returns the values evicted."""
        variable = self.variable(name)
        evicted = []

        with variable.lock:
            if value in variable._values:
                variable._values.move_to_end(value)
            else:
                variable._values[value] = None
            while len(variable._values) > variable.capacity:
                oldest, _ = variable._values.popitem(last=False)
                evicted.append(oldest)

            METRIC_VARIABLE_SIZE.labels(variable=name).set(len(variable._values))
            if evicted:
                METRIC_VARIABLE_EVICTIONS.labels(variable=name).inc(len(evicted))
                logger.debug(f"Variable {name} at capacity {variable.capacity}; evicted {evicted}")

            # Saved under the variable lock so concurrent pushes persist in order.
            if variable.persistent:
                self._save_locked(variable)

        return evicted

    # -----------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------

    def load_persistent(self) -> int:
        """Load every persistent variable from the backend; returns how many loaded."""
        loaded = 0
        for variable in self._variables.values():
            if not variable.persistent:
                continue
            if self.backend is None:
                self._record_load_failure(variable.name, "no persistence backend configured")
                continue
            try:
                values = self.backend.load(variable.name)
            except (VariablePersistenceError, redis.exceptions.RedisError, OSError) as e:
                self._record_load_failure(variable.name, str(e))
                continue

            with variable.lock:
                variable._values.clear()
                # Keep only the most recent `capacity` values.
                for value in values[-variable.capacity:]:
                    variable._values[value] = None
                    variable._values.move_to_end(value)
                METRIC_VARIABLE_SIZE.labels(variable=variable.name).set(len(variable._values))

            self.load_failures.pop(variable.name, None)
            loaded += 1
            logger.info(f"Loaded {len(values)} values into persistent variable {variable.name}")

        return loaded

    def save(self, name: str) -> bool:
        variable = self.variable(name)
        with variable.lock:
            return self._save_locked(variable)

    def save_all(self) -> int:
        """Persist every persistent variable; returns how many were saved."""
        saved = 0
        for variable in self._variables.values():
            if variable.persistent and self.save(variable.name):
                saved += 1
        return saved

    def _save_locked(self, variable: Variable) -> bool:
        if self.backend is None:
            return False
        try:
            self.backend.save(variable.name, list(variable._values))
            return True
        except (VariablePersistenceError, redis.exceptions.RedisError, OSError) as e:
            METRIC_VARIABLE_SAVE_FAILURES.labels(variable=variable.name).inc()
            logger.error(f"Failed to persist variable {variable.name}: {e}")
            return False

    def _record_load_failure(self, name: str, reason: str) -> None:
        self.load_failures[name] = reason
        METRIC_VARIABLE_LOAD_FAILURES.labels(variable=name).inc()
        logger.error(f"Persistent variable {name} could not be loaded, starting empty: {reason}")
