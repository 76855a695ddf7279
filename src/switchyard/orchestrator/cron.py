"""Five-field cron expressions for steward schedules.

Fields are ``minute hour day-of-month month day-of-week`` and are evaluated
by APScheduler's CronTrigger in UTC. Two classic cron rules differ from
APScheduler's own and are applied here:

- day-of-week counts from Sunday (0 and 7 both mean Sunday);
- when both day fields are restricted, a time matches if either matches.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _weekday_field(text: str) -> str:
    """Rewrite a cron day-of-week field with weekday names."""
    if text == "*":
        return text
    names: list[str] = []
    for part in text.split(","):
        if part[:1].isalpha():
            names.append(part.lower())
            continue
        values, _, step = part.partition("/")
        if values == "*":
            values = "0-6"
        first, _, last = values.partition("-")
        try:
            start = int(first)
            end = int(last) if last else (6 if step else start)
            days = range(start, end + 1, int(step) if step else 1)
        except ValueError:
            raise ValueError(f"Invalid cron day-of-week field: {text!r}") from None
        if start < 0 or end > 7 or not days:
            raise ValueError(f"Cron day-of-week field out of range 0-7: {part!r}")
        for day in days:
            if _WEEKDAY_NAMES[day] not in names:
                names.append(_WEEKDAY_NAMES[day])
    return ",".join(names)


def _cron_trigger(fields: list[str], day: str, day_of_week: str) -> CronTrigger:
    return CronTrigger(
        minute=fields[0],
        hour=fields[1],
        day=day,
        month=fields[3],
        day_of_week=day_of_week,
        timezone=timezone.utc,
    )


@dataclass(frozen=True)
class CronSchedule:
    """A parsed cron expression.

    Attributes:
        expression: The original expression text.
        trigger: APScheduler trigger computing fire times.
    """

    expression: str
    trigger: BaseTrigger = field(compare=False, repr=False)

    @classmethod
    def parse(cls, expression: str) -> CronSchedule:
        """Parse a five-field cron expression.

        Raises:
            ValueError: If the expression is malformed.
        """
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have 5 fields, got {len(fields)}: {expression!r}"
            )
        day_of_week = _weekday_field(fields[4])

        if fields[2].startswith("*") or fields[4].startswith("*"):
            trigger: BaseTrigger = _cron_trigger(fields, fields[2], day_of_week)
        else:
            trigger = OrTrigger(
                [
                    _cron_trigger(fields, fields[2], "*"),
                    _cron_trigger(fields, "*", day_of_week),
                ]
            )
        return cls(expression=expression, trigger=trigger)

    def _next_from(self, moment: datetime) -> datetime | None:
        return self.trigger.get_next_fire_time(None, moment)

    def matches(self, moment: datetime) -> bool:
        """Return True if the schedule fires in the minute containing moment."""
        minute = moment.replace(second=0, microsecond=0)
        return self._next_from(minute) == minute

    def next_after(self, moment: datetime) -> datetime | None:
        """Return the first matching minute strictly after moment.

        Returns None when the schedule never fires again.
        """
        return self._next_from(
            moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        )
