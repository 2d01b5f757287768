"""Schedule strings: ``"once"`` or a 5/6-field cron expression.

Fields are ``[second] minute hour day month weekday``; each one is a literal, ``*``
or ``*/N``. Weekday 0 and 7 are both Sunday.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, List, Optional, Tuple

from .errors import SimulationConfigurationNotValid
from .model import ONCE

FIELDS: List[Tuple[str, int, int]] = [
    ("second", 0, 59),
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
]

# Upper bound for the next-fire search (Feb 29 on a given weekday can take ~28 years).
SEARCH_LIMIT = timedelta(days=366 * 30)


def _parse_field(token: str, name: str, low: int, high: int) -> Tuple[FrozenSet[int], bool]:
    if token == "*":
        return frozenset(range(low, high + 1)), True
    if token.startswith("*/"):
        step = token[2:]
        if not step.isdigit() or int(step) == 0:
            raise ValueError(f"invalid step '{token}' for {name}")
        return frozenset(range(low, high + 1, int(step))), False
    if not token.isdigit():
        raise ValueError(f"invalid value '{token}' for {name}")
    value = int(token)
    if not low <= value <= high:
        raise ValueError(f"{name} value {value} out of range {low}-{high}")
    return frozenset([value]), False


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    seconds: FrozenSet[int]
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    any_day: bool
    any_weekday: bool

    @staticmethod
    def parse(expression: str) -> "CronSchedule":
        tokens = expression.split()
        if len(tokens) == 5:
            tokens = ["0"] + tokens
        if len(tokens) != 6:
            raise ValueError(f"expected 5 or 6 fields, got {len(tokens)}")
        parsed = [_parse_field(token, *field) for token, field in zip(tokens, FIELDS)]
        return CronSchedule(
            expression=expression,
            seconds=parsed[0][0],
            minutes=parsed[1][0],
            hours=parsed[2][0],
            days=parsed[3][0],
            months=parsed[4][0],
            weekdays=frozenset(7 if value == 0 else value for value in parsed[5][0]),
            any_day=parsed[3][1],
            any_weekday=parsed[5][1],
        )

    def _day_matches(self, moment: datetime) -> bool:
        # isoweekday: Monday 1 ... Sunday 7
        day_ok = moment.day in self.days
        weekday_ok = moment.isoweekday() in self.weekdays
        if self.any_day and self.any_weekday:
            return True
        if self.any_day:
            return weekday_ok
        if self.any_weekday:
            return day_ok
        return day_ok or weekday_ok

    def next_fire(self, after: datetime) -> Optional[datetime]:
        """First matching instant strictly after ``after`` (second resolution)."""
        moment = after.replace(microsecond=0) + timedelta(seconds=1)
        limit = after + SEARCH_LIMIT
        while moment <= limit:
            if moment.month not in self.months:
                year, month = (moment.year + 1, 1) if moment.month == 12 else (moment.year, moment.month + 1)
                moment = moment.replace(year=year, month=month, day=1, hour=0, minute=0, second=0)
                continue
            if not self._day_matches(moment):
                moment = moment.replace(hour=0, minute=0, second=0) + timedelta(days=1)
                continue
            if moment.hour not in self.hours:
                moment = moment.replace(minute=0, second=0) + timedelta(hours=1)
                continue
            if moment.minute not in self.minutes:
                moment = moment.replace(second=0) + timedelta(minutes=1)
                continue
            if moment.second not in self.seconds:
                moment += timedelta(seconds=1)
                continue
            return moment
        return None


def is_once(schedule: Optional[str]) -> bool:
    return schedule == ONCE


def validate_schedule(schedule: Optional[str], parent_type: str, parent_index: int) -> None:
    if schedule is None or is_once(schedule):
        return
    try:
        CronSchedule.parse(str(schedule))
    except ValueError as exc:
        raise SimulationConfigurationNotValid(
            f"The {parent_type} configuration information at array index position {parent_index} "
            f"includes an invalid schedule: '{schedule}' ({exc})"
        ) from exc


__all__ = ["CronSchedule", "is_once", "validate_schedule"]
