from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from async_msg_scheduler.recurrence import (
    CalendarTrigger,
    RepeatPolicy,
    compute_next_fire,
    interval_period,
    next_interval_fire,
    resolve_fire_time,
)

UTC = timezone.utc
NOW = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)

INTERVAL_POLICIES = [
    RepeatPolicy.EVERY_N_SECONDS,
    RepeatPolicy.EVERY_N_MINUTES,
    RepeatPolicy.EVERY_N_HOURS,
    RepeatPolicy.EVERY_N_DAYS,
]


@pytest.mark.parametrize("policy", INTERVAL_POLICIES)
@pytest.mark.parametrize("interval_n", [1, 5, 7])
@pytest.mark.parametrize("offset", [timedelta(seconds=1), timedelta(minutes=12), timedelta(days=40, seconds=13)])
def test_interval_next_fire_is_after_now_and_on_cadence(policy, interval_n, offset):
    anchor = NOW - offset
    period = interval_period(policy, interval_n)

    nxt = compute_next_fire(anchor, policy, interval_n, now=NOW)

    assert nxt > NOW
    assert (nxt - anchor) % period == timedelta(0)
    assert nxt - period <= NOW


def test_every_five_minutes_anchor_twelve_minutes_ago():
    anchor = NOW - timedelta(minutes=12)
    nxt = compute_next_fire(anchor, RepeatPolicy.EVERY_N_MINUTES, 5, now=NOW)
    assert nxt == anchor + timedelta(minutes=15)


def test_now_on_cadence_point_moves_to_next_point():
    anchor = NOW - timedelta(minutes=10)
    assert next_interval_fire(anchor, timedelta(minutes=5), NOW) == NOW + timedelta(minutes=5)


def test_future_anchor_is_first_fire():
    anchor = NOW + timedelta(hours=3)
    assert compute_next_fire(anchor, RepeatPolicy.EVERY_N_HOURS, 2, now=NOW) == anchor


def test_persisted_next_run_wins_even_in_the_past():
    anchor = NOW - timedelta(hours=5)
    persisted = NOW - timedelta(minutes=1)
    nxt = compute_next_fire(anchor, RepeatPolicy.EVERY_N_HOURS, 1, previous_next_run=persisted, now=NOW)
    assert nxt == persisted


def test_once_fires_at_anchor():
    anchor = NOW - timedelta(days=1)
    assert compute_next_fire(anchor, RepeatPolicy.ONCE, now=NOW) == anchor


class TestIntervalPeriod:
    def test_units(self):
        assert interval_period(RepeatPolicy.EVERY_N_SECONDS, 30) == timedelta(seconds=30)
        assert interval_period(RepeatPolicy.EVERY_N_DAYS, 2) == timedelta(days=2)

    def test_rejects_calendar_policy(self):
        with pytest.raises(ValueError):
            interval_period(RepeatPolicy.DAILY, 1)

    def test_rejects_missing_or_zero_interval(self):
        with pytest.raises(ValueError):
            interval_period(RepeatPolicy.EVERY_N_HOURS, None)
        with pytest.raises(ValueError):
            interval_period(RepeatPolicy.EVERY_N_HOURS, 0)


class TestCalendarPolicies:
    """Calendar policies repeat the anchor's wall-clock time."""

    def test_daily(self):
        anchor = datetime(2025, 1, 1, 8, 30, tzinfo=UTC)
        trigger = compute_next_fire(anchor, RepeatPolicy.DAILY, now=NOW)
        assert isinstance(trigger, CalendarTrigger)
        assert resolve_fire_time(trigger, NOW) == datetime(2025, 3, 11, 8, 30, tzinfo=UTC)

    def test_daily_later_today(self):
        anchor = datetime(2025, 1, 1, 17, 45, 30, tzinfo=UTC)
        trigger = CalendarTrigger.from_anchor(anchor, RepeatPolicy.DAILY)
        assert trigger.next_after(NOW) == datetime(2025, 3, 10, 17, 45, 30, tzinfo=UTC)

    def test_weekly_keeps_anchor_weekday(self):
        # 2025-01-01 is a Wednesday
        anchor = datetime(2025, 1, 1, 10, 0, tzinfo=UTC)
        trigger = CalendarTrigger.from_anchor(anchor, RepeatPolicy.WEEKLY)
        nxt = trigger.next_after(NOW)
        assert nxt == datetime(2025, 3, 12, 10, 0, tzinfo=UTC)
        assert nxt.weekday() == anchor.weekday()

    def test_weekly_sunday_anchor(self):
        anchor = datetime(2025, 3, 9, 7, 0, tzinfo=UTC)
        trigger = CalendarTrigger.from_anchor(anchor, RepeatPolicy.WEEKLY)
        assert trigger.next_after(NOW) == datetime(2025, 3, 16, 7, 0, tzinfo=UTC)

    def test_monthly_day_31_skips_short_months(self):
        anchor = datetime(2025, 1, 31, 7, 0, tzinfo=UTC)
        trigger = CalendarTrigger.from_anchor(anchor, RepeatPolicy.MONTHLY)
        assert trigger.next_after(datetime(2025, 2, 1, tzinfo=UTC)) == datetime(2025, 3, 31, 7, 0, tzinfo=UTC)

    def test_every_three_months_aligned_on_anchor_month(self):
        anchor = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)
        trigger = compute_next_fire(anchor, RepeatPolicy.EVERY_N_MONTHS, 3, now=NOW)
        assert trigger.next_after(datetime(2025, 2, 1, tzinfo=UTC)) == datetime(2025, 4, 15, 12, 0, tzinfo=UTC)
        assert trigger.next_after(datetime(2025, 10, 16, tzinfo=UTC)) == datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def test_evaluated_in_anchor_timezone(self):
        jakarta = ZoneInfo("Asia/Jakarta")
        anchor = datetime(2025, 1, 1, 8, 0, tzinfo=jakarta)
        trigger = CalendarTrigger.from_anchor(anchor, RepeatPolicy.DAILY)
        # 00:00 UTC is 07:00 in Jakarta
        nxt = trigger.next_after(datetime(2025, 3, 10, 0, 0, tzinfo=UTC))
        assert nxt == datetime(2025, 3, 10, 8, 0, tzinfo=jakarta)

    def test_invalid_expression(self):
        with pytest.raises(ValueError):
            CalendarTrigger("not a cron")

    def test_equality(self):
        anchor = datetime(2025, 1, 1, 8, 30, tzinfo=UTC)
        assert CalendarTrigger.from_anchor(anchor, RepeatPolicy.DAILY) == CalendarTrigger("30 8 * * * 0")
