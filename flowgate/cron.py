"""Minimal five-field cron expression parser and matcher.

Supported syntax per field: ``*``, a single value ``n``, a range ``a-b``, a
step ``*/n`` or ``a-b/n``, and comma separated lists of any of these. Fields
are minute, hour, day-of-month, month and day-of-week (0-6, Sunday is 0; 7 is
accepted as Sunday). All five fields must match.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Tuple

from .errors import CronParseError

_FIELDS: Tuple[Tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day-of-month", 1, 31),
    ("month", 1, 12),
    ("day-of-week", 0, 7),
)


def _parse_int(token: str, name: str) -> int:
    if not token.isdigit():
        raise CronParseError(f"Invalid {name} value '{token}'")
    return int(token)


def _parse_field(spec: str, name: str, low: int, high: int) -> FrozenSet[int]:
    values: set[int] = set()
    for part in spec.split(","):
        if not part:
            raise CronParseError(f"Empty list item in {name} field '{spec}'")
        base, _, step_token = part.partition("/")
        step = 1
        if step_token:
            step = _parse_int(step_token, name)
            if step == 0:
                raise CronParseError(f"Step of zero in {name} field '{spec}'")

        if base == "*":
            start, end = low, high
        elif "-" in base:
            first, _, last = base.partition("-")
            start, end = _parse_int(first, name), _parse_int(last, name)
            if start > end:
                raise CronParseError(f"Descending range '{base}' in {name} field")
        else:
            start = _parse_int(base, name)
            end = high if step_token else start

        if start < low or end > high:
            raise CronParseError(
                f"{name} value out of range {low}-{high} in '{spec}'"
            )
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """A parsed cron expression."""

    source: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        parts = expression.split()
        if len(parts) != 5:
            raise CronParseError(
                f"Cron expression '{expression}' must have 5 fields, got {len(parts)}"
            )
        parsed = [
            _parse_field(part, name, low, high)
            for part, (name, low, high) in zip(parts, _FIELDS)
        ]
        weekdays = frozenset(0 if day == 7 else day for day in parsed[4])
        return cls(expression, parsed[0], parsed[1], parsed[2], parsed[3], weekdays)

    def matches(self, moment: datetime) -> bool:
        # datetime.weekday() is Monday=0; cron uses Sunday=0
        weekday = (moment.weekday() + 1) % 7
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.day in self.days
            and moment.month in self.months
            and weekday in self.weekdays
        )


def cron_matches(expression: str, moment: datetime) -> bool:
    return CronExpression.parse(expression).matches(moment)
