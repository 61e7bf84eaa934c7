# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Daily delivery windows.

A window is a pair of ``HH:MM`` bounds evaluated at minute resolution against
the wall-clock time of ``now``. Both bounds are inclusive. When ``start`` is
later than ``end`` the window spans midnight (e.g. ``22:00``-``06:00``).
A window with a missing or unparsable bound does not restrict delivery.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta

MINUTES_PER_DAY = 24 * 60

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_hhmm(value: str | None) -> int | None:
    """Parse ``HH:MM`` into minutes after midnight, ``None`` if invalid."""
    if not value:
        return None
    match = _HHMM.match(str(value).strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def _bounds(start: str | None, end: str | None) -> tuple[int, int] | None:
    s, e = parse_hhmm(start), parse_hhmm(end)
    if s is None or e is None:
        return None
    return s, e


def in_window(now: datetime, start: str | None = None, end: str | None = None) -> bool:
    """Return True if ``now`` falls inside the daily window."""
    bounds = _bounds(start, end)
    if bounds is None:
        return True
    s, e = bounds
    minutes = now.hour * 60 + now.minute
    if s <= e:
        return s <= minutes <= e
    return minutes >= s or minutes <= e


def delay_until_window(now: datetime, start: str | None = None, end: str | None = None) -> timedelta:
    """Shortest forward wait until the window opens, zero when already inside.

    The wait is measured in whole minutes from the start of the current
    minute, wrapping across midnight.
    """
    if in_window(now, start, end):
        return timedelta(0)
    s, _ = _bounds(start, end)
    minutes = now.hour * 60 + now.minute
    return timedelta(minutes=(s - minutes) % MINUTES_PER_DAY)
