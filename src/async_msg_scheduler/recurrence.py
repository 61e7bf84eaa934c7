# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Recurrence calculation for scheduled jobs.

Two families of repeat policies are supported:

- Interval policies (``every_n_seconds`` .. ``every_n_days``) form an absolute
  cadence anchored at the job's anchor time. The next fire is always a whole
  number of periods after the anchor, so a restart neither drifts the cadence
  nor replays the fires missed during downtime.
- Calendar policies (``daily``, ``weekly``, ``monthly``, ``every_n_months``)
  repeat at the anchor's wall-clock time and are expressed as croniter
  expressions evaluated in the anchor's timezone.

``once`` fires at the anchor, immediately if the anchor is already past.

Example:
    Computing the next fire of an interval job::

        nxt = compute_next_fire(anchor, RepeatPolicy.EVERY_N_MINUTES, 5, now=now)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from croniter import croniter


class RepeatPolicy(str, Enum):
    """How a job repeats after its first firing."""

    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    EVERY_N_SECONDS = "every_n_seconds"
    EVERY_N_MINUTES = "every_n_minutes"
    EVERY_N_HOURS = "every_n_hours"
    EVERY_N_DAYS = "every_n_days"
    EVERY_N_MONTHS = "every_n_months"

    @property
    def needs_interval(self) -> bool:
        return self.value.startswith("every_n_")

    @property
    def is_interval(self) -> bool:
        """True for the fixed-period cadences whose next run is persisted."""
        return self in _PERIOD_UNITS


_PERIOD_UNITS = {
    RepeatPolicy.EVERY_N_SECONDS: timedelta(seconds=1),
    RepeatPolicy.EVERY_N_MINUTES: timedelta(minutes=1),
    RepeatPolicy.EVERY_N_HOURS: timedelta(hours=1),
    RepeatPolicy.EVERY_N_DAYS: timedelta(days=1),
}


def interval_period(policy: RepeatPolicy, interval_n: int | None) -> timedelta:
    """Return the period of an interval policy.

    Raises:
        ValueError: If the policy is not a fixed-period interval or
            ``interval_n`` is missing or below 1.
    """
    unit = _PERIOD_UNITS.get(policy)
    if unit is None:
        raise ValueError(f"{policy.value} has no fixed period")
    if interval_n is None or int(interval_n) < 1:
        raise ValueError("interval_n must be >= 1")
    return unit * int(interval_n)


def next_interval_fire(anchor: datetime, period: timedelta, now: datetime) -> datetime:
    """Next cadence point strictly after ``now``.

    A future anchor is returned unchanged. Otherwise the result is
    ``anchor + k * period`` with the smallest ``k`` giving a time after ``now``.
    """
    if anchor > now:
        return anchor
    steps = (now - anchor) // period + 1
    return anchor + steps * period


class CalendarTrigger:
    """Recurring wall-clock trigger backed by a croniter expression.

    The expression uses croniter's six-field form where the sixth field holds
    the seconds: ``minute hour day month weekday second``.

    Attributes:
        expression: The croniter expression.
        tzinfo: Timezone the expression is evaluated in.
    """

    def __init__(self, expression: str, tzinfo=None):
        if not croniter.is_valid(expression):
            raise ValueError(f"invalid calendar expression: {expression}")
        self.expression = expression
        self.tzinfo = tzinfo

    @classmethod
    def from_anchor(cls, anchor: datetime, policy: RepeatPolicy, interval_n: int | None = None) -> CalendarTrigger:
        """Build the trigger repeating ``anchor``'s wall-clock time under ``policy``."""
        minute, hour, second = anchor.minute, anchor.hour, anchor.second
        if policy is RepeatPolicy.DAILY:
            fields = (minute, hour, "*", "*", "*")
        elif policy is RepeatPolicy.WEEKLY:
            fields = (minute, hour, "*", "*", anchor.isoweekday() % 7)
        elif policy is RepeatPolicy.MONTHLY:
            fields = (minute, hour, anchor.day, "*", "*")
        elif policy is RepeatPolicy.EVERY_N_MONTHS:
            step = max(1, int(interval_n or 1))
            months = [m for m in range(1, 13) if (m - anchor.month) % step == 0]
            fields = (minute, hour, anchor.day, ",".join(str(m) for m in months), "*")
        else:
            raise ValueError(f"{policy.value} is not a calendar policy")
        expression = " ".join(str(part) for part in (*fields, second))
        return cls(expression, anchor.tzinfo)

    def next_after(self, moment: datetime) -> datetime:
        """First occurrence strictly after ``moment``."""
        base = moment.astimezone(self.tzinfo) if self.tzinfo is not None and moment.tzinfo else moment
        nxt = croniter(self.expression, base).get_next(datetime)
        if nxt.tzinfo is None and self.tzinfo is not None:
            nxt = nxt.replace(tzinfo=self.tzinfo)
        return nxt

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CalendarTrigger):
            return NotImplemented
        return self.expression == other.expression

    def __repr__(self) -> str:
        return f"CalendarTrigger({self.expression!r})"


def compute_next_fire(
    anchor: datetime,
    policy: RepeatPolicy,
    interval_n: int | None = None,
    previous_next_run: datetime | None = None,
    *,
    now: datetime,
) -> datetime | CalendarTrigger:
    """Compute when a job fires next.

    Args:
        anchor: The job's anchor time.
        policy: The job's repeat policy.
        interval_n: Multiplier for ``every_n_*`` policies.
        previous_next_run: Persisted next run of an interval job. When given
            it wins over a fresh computation so a restarted process keeps the
            cadence it had before.
        now: Current time.

    Returns:
        A timestamp for ``once`` and interval policies, a ``CalendarTrigger``
        for calendar policies.
    """
    if policy is RepeatPolicy.ONCE:
        return anchor
    if policy.is_interval:
        if previous_next_run is not None:
            return previous_next_run
        return next_interval_fire(anchor, interval_period(policy, interval_n), now)
    return CalendarTrigger.from_anchor(anchor, policy, interval_n)


def resolve_fire_time(target: datetime | CalendarTrigger, now: datetime) -> datetime:
    """Turn a ``compute_next_fire`` result into a concrete instant."""
    if isinstance(target, CalendarTrigger):
        return target.next_after(now)
    return target
