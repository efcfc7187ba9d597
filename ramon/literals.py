#!/usr/bin/env python3
"""
=====================================================================
RAMON Literal Grammar
=====================================================================
Parsers for the literals that appear in a rule-set document.

- Duration:       <integer><unit>, unit in s/m/h/d ("10s", "2m", "0s")
- Rate:           <integer>/<unit> ("4/m" = four per minute)
- Schedule:       [month] [day] [weekday] <time> ("8:00AM", "* * mon 9:30am")
- Interpolation:  ${name} substitution from a match context

Every parser raises LiteralError (a ConfigurationError) so a bad literal
stops the rule set from loading.

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import re
from datetime import datetime, timedelta
from typing import List, Mapping, Optional, Tuple


class ConfigurationError(ValueError):
    """Raised when a rule set or notification config is invalid."""
    pass


class LiteralError(ConfigurationError):
    """Raised when a duration, rate or schedule literal is malformed."""
    pass


# =====================================================================
# DURATIONS AND RATES
# =====================================================================

UNIT_SECONDS = {'s': 1, 'm': 60, 'h': 3600, 'd': 86400}

DURATION_RE = re.compile(r'^(\d+)([smhd])$')
RATE_RE = re.compile(r'^(\d+)/([smhd])$')
PLACEHOLDER_RE = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')


def parse_duration(text: str) -> float:
    """Parse "<integer><unit>" into seconds."""
    if not isinstance(text, str):
        raise LiteralError(f"Duration must be a string like \"10s\", got {text!r}")

    match = DURATION_RE.match(text.strip())
    if not match:
        raise LiteralError(f"Invalid duration `{text}` (expected <integer><s|m|h|d>)")

    return float(int(match.group(1)) * UNIT_SECONDS[match.group(2)])


def parse_rate(text: str) -> Tuple[int, float]:
    """
    Parse "<integer>/<unit>" into (count, unit_seconds).

    Example:
        >>> parse_rate("4/m")
        (4, 60.0)
    """
    if not isinstance(text, str):
        raise LiteralError(f"Rate must be a string like \"4/m\", got {text!r}")

    match = RATE_RE.match(text.strip())
    if not match:
        raise LiteralError(f"Invalid rate `{text}` (expected <integer>/<s|m|h|d>)")

    count = int(match.group(1))
    if count < 1:
        raise LiteralError(f"Invalid rate `{text}`: count must be at least 1")

    return count, float(UNIT_SECONDS[match.group(2)])


# =====================================================================
# SCHEDULE EXPRESSIONS
# =====================================================================

MONTHS = ['jan', 'feb', 'mar', 'apr', 'may', 'jun',
          'jul', 'aug', 'sep', 'oct', 'nov', 'dec']
WEEKDAYS = ['mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun']
MONTH_DAYS = [31, 29, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31]

TIME_RE = re.compile(r'^(\d{1,2}):(\d{2})\s*([ap]m)?$', re.IGNORECASE)

# Long enough to reach any valid month/day/weekday combination (Feb 29 on a
# given weekday recurs within 28 years).
MAX_SEARCH_DAYS = 366 * 29


class Schedule:
    """
    Wall-clock schedule: [month] [day-of-month] [weekday] <time-of-day>.

    Missing leading fields and "*" are wildcards. The time of day is the
    last field and is mandatory.

    Usage:
        schedule = Schedule.parse("* * mon 9:30AM")
        deadline = schedule.next_after(time.time())
    """

    def __init__(
        self,
        expression: str,
        hour: int,
        minute: int,
        month: Optional[int] = None,
        day: Optional[int] = None,
        weekday: Optional[int] = None
    ):
        self.expression = expression
        self.hour = hour
        self.minute = minute
        self.month = month
        self.day = day
        self.weekday = weekday

    @classmethod
    def parse(cls, expression: str) -> "Schedule":
        if not isinstance(expression, str) or not expression.strip():
            raise LiteralError(f"Schedule must be a non-empty string, got {expression!r}")

        fields = expression.split()
        if len(fields) > 4:
            raise LiteralError(
                f"Invalid schedule `{expression}`: expected at most 4 fields "
                f"([month] [day] [weekday] <time>)"
            )

        hour, minute = _parse_time_of_day(fields[-1], expression)

        # Right-align the optional fields: month, day, weekday.
        positional = ['*'] * (4 - len(fields)) + fields[:-1]
        month = _parse_month(positional[0], expression)
        day = _parse_day(positional[1], expression)
        weekday = _parse_weekday(positional[2], expression)

        if month is not None and day is not None and day > MONTH_DAYS[month - 1]:
            raise LiteralError(f"Invalid schedule `{expression}`: {MONTHS[month - 1]} has no day {day}")

        return cls(expression, hour, minute, month=month, day=day, weekday=weekday)

    def matches_date(self, candidate: datetime) -> bool:
        if self.month is not None and candidate.month != self.month:
            return False
        if self.day is not None and candidate.day != self.day:
            return False
        if self.weekday is not None and candidate.weekday() != self.weekday:
            return False
        return True

    def next_after(self, now: float) -> float:
        """Return the first local wall-clock instant strictly after `now`."""
        start = datetime.fromtimestamp(now).replace(hour=0, minute=0, second=0, microsecond=0)

        for offset in range(MAX_SEARCH_DAYS):
            day = start + timedelta(days=offset)
            if not self.matches_date(day):
                continue
            candidate = day.replace(hour=self.hour, minute=self.minute).timestamp()
            if candidate > now:
                return candidate

        raise LiteralError(f"Schedule `{self.expression}` never occurs")

    def __repr__(self) -> str:
        return f"Schedule({self.expression!r})"


def _parse_time_of_day(field: str, expression: str) -> Tuple[int, int]:
    match = TIME_RE.match(field)
    if not match:
        raise LiteralError(
            f"Invalid schedule `{expression}`: last field must be a time of day "
            f"like 8:00AM or 20:15, got `{field}`"
        )

    hour = int(match.group(1))
    minute = int(match.group(2))
    meridiem = (match.group(3) or '').lower()

    if minute > 59:
        raise LiteralError(f"Invalid schedule `{expression}`: minute {minute} out of range")

    if meridiem:
        if hour < 1 or hour > 12:
            raise LiteralError(f"Invalid schedule `{expression}`: hour {hour} out of range for 12-hour time")
        hour = hour % 12
        if meridiem == 'pm':
            hour += 12
    elif hour > 23:
        raise LiteralError(f"Invalid schedule `{expression}`: hour {hour} out of range")

    return hour, minute


def _parse_month(field: str, expression: str) -> Optional[int]:
    if field == '*':
        return None
    name = field.lower()[:3]
    if not field.isdigit() and name in MONTHS:
        return MONTHS.index(name) + 1
    if field.isdigit() and 1 <= int(field) <= 12:
        return int(field)
    raise LiteralError(f"Invalid schedule `{expression}`: bad month `{field}`")


def _parse_day(field: str, expression: str) -> Optional[int]:
    if field == '*':
        return None
    if field.isdigit() and 1 <= int(field) <= 31:
        return int(field)
    raise LiteralError(f"Invalid schedule `{expression}`: bad day of month `{field}`")


def _parse_weekday(field: str, expression: str) -> Optional[int]:
    if field == '*':
        return None
    name = field.lower()[:3]
    if name in WEEKDAYS:
        return WEEKDAYS.index(name)
    raise LiteralError(f"Invalid schedule `{expression}`: bad weekday `{field}`")


# =====================================================================
# INTERPOLATION
# =====================================================================

def placeholders(template: str) -> List[str]:
    """Names referenced as ${name} in a template, in order of appearance."""
    return PLACEHOLDER_RE.findall(template or '')


def interpolate(template: str, context: Mapping[str, str]) -> str:
    """Substitute ${name} references; names missing from the context become ''."""
    if not template:
        return ''
    return PLACEHOLDER_RE.sub(lambda m: str(context.get(m.group(1), '')), template)
