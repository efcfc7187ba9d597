#!/usr/bin/env python3
"""
=====================================================================
RAMON Duration Tracking
=====================================================================
Gates that sit between a monitor's match and its actions.

DurationTracker: "condition held for N, then stay quiet for a cooldown"

    IDLE      -- true -->                      PENDING(now)
    PENDING   -- false -->                     IDLE
    PENDING   -- true, now - start >= N -->    fire, COOLDOWN(now + cooldown)
    COOLDOWN  -- before until -->              ignored
    COOLDOWN  -- after until, true -->         PENDING(now)

Backward clock jumps are clamped to zero elapsed time.

OccurrenceThreshold: "N matching events within one window".

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import threading
from collections import deque
from typing import Optional


class TrackerState:
    """Enum-like class for duration tracker states."""
    IDLE = "IDLE"
    PENDING = "PENDING"
    COOLDOWN = "COOLDOWN"


class DurationTracker:
    """
    Per-monitor state machine for duration and cooldown semantics.

    A zero duration fires on the first true observation, which gives a
    plain "cooldown after firing" monitor.
    """

    def __init__(self, duration: float = 0.0, cooldown: float = 0.0):
        self.duration = duration
        self.cooldown = cooldown
        self.state = TrackerState.IDLE
        self.pending_since: Optional[float] = None
        self.cooldown_until: Optional[float] = None
        self._lock = threading.Lock()

    def observe(self, condition: bool, now: float) -> bool:
        """Feed one evaluation; returns True when the monitor should fire."""
        with self._lock:
            if self.state == TrackerState.COOLDOWN:
                if now < self.cooldown_until:
                    return False
                self.state = TrackerState.IDLE
                self.cooldown_until = None

            if not condition:
                if self.state == TrackerState.PENDING:
                    self.state = TrackerState.IDLE
                    self.pending_since = None
                return False

            if self.state == TrackerState.IDLE:
                self.state = TrackerState.PENDING
                self.pending_since = now

            return self._check_locked(now)

    def expire(self, now: float) -> bool:
        """Deadline reached with no fresh observation; fire if still pending long enough."""
        with self._lock:
            if self.state != TrackerState.PENDING:
                return False
            return self._check_locked(now)

    def pending_deadline(self) -> Optional[float]:
        with self._lock:
            if self.state != TrackerState.PENDING:
                return None
            return self.pending_since + self.duration

    def _check_locked(self, now: float) -> bool:
        elapsed = max(0.0, now - self.pending_since)
        if elapsed < self.duration:
            return False
        self.state = TrackerState.COOLDOWN
        self.pending_since = None
        self.cooldown_until = now + self.cooldown
        return True

    def __repr__(self) -> str:
        return f"DurationTracker(state={self.state}, duration={self.duration}, cooldown={self.cooldown})"


class OccurrenceThreshold:
    """True once `count` occurrences fall within `window` seconds."""

    def __init__(self, count: int, window: float):
        self.count = count
        self.window = window
        self._history = deque(maxlen=count)
        self._lock = threading.Lock()

    def record(self, now: float) -> bool:
        with self._lock:
            self._history.append(now)
            if len(self._history) < self.count:
                return False
            return max(0.0, now - self._history[0]) <= self.window
