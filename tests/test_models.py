from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from async_msg_scheduler.models import (
    Job,
    JobCreate,
    JobUpdate,
    Recipient,
    contains_keyword,
    normalize_address,
    parse_recipients,
    to_chat_id,
)
from async_msg_scheduler.recurrence import RepeatPolicy

UTC = timezone.utc
NOW = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


class TestAddresses:
    def test_local_number_gets_country_code(self):
        assert normalize_address("0812-3456 789") == "628123456789"
        assert normalize_address("0812", country_code="39") == "39812"

    def test_plus_prefix_dropped(self):
        assert normalize_address("+39 333 1234567") == "393331234567"

    def test_group_kept_verbatim(self):
        assert normalize_address("12036302@g.us") == "12036302@g.us"

    def test_chat_id(self):
        assert to_chat_id("628123") == "628123@c.us"
        assert to_chat_id("12036302@g.us") == "12036302@g.us"
        assert to_chat_id("628123@c.us") == "628123@c.us"


class TestParseRecipients:
    def test_duplicate_pairs_collapse(self):
        text = "0811 | hello\n0811 | hello\n+62811 | hello"
        assert parse_recipients(text) == [Recipient(address="62811", text="hello")]

    def test_same_address_different_messages_kept(self):
        items = parse_recipients("0811 | hi\n0811 | bye")
        assert [r.text for r in items] == ["hi", "bye"]

    def test_default_message_and_separators(self):
        items = parse_recipients("0811, 0822; 0833\n0844 | own text", default_message="default")
        assert [(r.address, r.text) for r in items] == [
            ("62811", "default"),
            ("62822", "default"),
            ("62833", "default"),
            ("62844", "own text"),
        ]

    def test_message_may_contain_pipes(self):
        items = parse_recipients("0811 | a | b")
        assert items[0].text == "a | b"

    def test_lines_without_message_dropped(self):
        assert parse_recipients("0811\n\n   \n") == []

    def test_order_preserved(self):
        items = parse_recipients("0833 | x\n0811 | x\n0822 | x")
        assert [r.address for r in items] == ["62833", "62811", "62822"]


def test_contains_keyword():
    assert contains_keyword("Please STOP sending", "stop")
    assert not contains_keyword("hello", "stop")
    assert not contains_keyword("anything", "  ")


class TestJobCreate:
    def base(self, **overrides):
        data = {"targets_text": "0811 | hi", "anchor_time": "2025-03-10T10:00:00"}
        data.update(overrides)
        return data

    def test_build_localizes_naive_anchor(self):
        job = JobCreate.model_validate(self.base()).build(1, tz=UTC, now=NOW)
        assert job.anchor_time == datetime(2025, 3, 10, 10, 0, tzinfo=UTC)
        assert job.recipients == [Recipient(address="62811", text="hi")]
        assert job.created_at == NOW
        assert job.dispatch_gap_seconds == 2

    def test_interval_required_for_every_n(self):
        with pytest.raises(ValidationError):
            JobCreate.model_validate(self.base(repeat="every_n_minutes"))

    def test_interval_below_one_rejected(self):
        with pytest.raises(ValidationError):
            JobCreate.model_validate(self.base(repeat="every_n_minutes", interval_n=0))

    def test_interval_cleared_for_calendar_policy(self):
        request = JobCreate.model_validate(self.base(repeat="daily", interval_n=4))
        assert request.interval_n is None

    def test_repeat_count_becomes_remaining_runs(self):
        job = JobCreate.model_validate(self.base(repeat="daily", repeat_count=3)).build(1, tz=UTC)
        assert job.remaining_runs == 3

    def test_repeat_count_must_be_positive(self):
        with pytest.raises(ValidationError):
            JobCreate.model_validate(self.base(repeat_count=0))

    def test_invalid_window_rejected(self):
        with pytest.raises(ValidationError):
            JobCreate.model_validate(self.base(window_start="25:00", window_end="06:00"))

    def test_blank_optional_fields(self):
        request = JobCreate.model_validate(self.base(repeat_until="", stop_keyword="  ", window_start=""))
        assert request.repeat_until is None
        assert request.stop_keyword is None
        assert request.window_start is None

    def test_seconds_are_clamped(self):
        request = JobCreate.model_validate(
            self.base(dispatch_gap_seconds=-4, random_delay_min_seconds="3.7", random_delay_max_seconds=None)
        )
        assert request.dispatch_gap_seconds == 0
        assert request.random_delay_min_seconds == 3
        assert request.random_delay_max_seconds == 0

    def test_no_recipient_survives(self):
        request = JobCreate.model_validate(self.base(targets_text="0811"))
        with pytest.raises(ValueError, match="No valid targets"):
            request.build(1, tz=UTC)

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            JobCreate.model_validate(self.base(colour="red"))


class TestJobUpdate:
    def job(self, **overrides):
        data = {
            "id": 7,
            "recipients": [Recipient(address="62811", text="hi")],
            "targets_text": "0811 | hi",
            "anchor_time": NOW,
            "repeat": RepeatPolicy.EVERY_N_MINUTES,
            "interval_n": 5,
            "next_run_at": NOW + timedelta(minutes=5),
            "stop_keyword": "stop",
        }
        data.update(overrides)
        return Job(**data)

    def test_only_sent_fields_change(self):
        updated = JobUpdate.model_validate({"window_start": "08:00", "window_end": "20:00"}).apply(self.job(), tz=UTC)
        assert (updated.window_start, updated.window_end) == ("08:00", "20:00")
        assert updated.interval_n == 5
        assert updated.next_run_at == NOW + timedelta(minutes=5)

    def test_anchor_change_resets_cadence(self):
        updated = JobUpdate.model_validate({"anchor_time": "2025-03-11T07:00:00"}).apply(self.job(), tz=UTC)
        assert updated.anchor_time == datetime(2025, 3, 11, 7, 0, tzinfo=UTC)
        assert updated.next_run_at is None

    def test_switch_to_calendar_clears_interval(self):
        updated = JobUpdate.model_validate({"repeat": "weekly"}).apply(self.job(), tz=UTC)
        assert updated.repeat is RepeatPolicy.WEEKLY
        assert updated.interval_n is None

    def test_null_clears_optional_field(self):
        updated = JobUpdate.model_validate({"stop_keyword": None}).apply(self.job(), tz=UTC)
        assert updated.stop_keyword is None

    def test_new_targets_are_parsed(self):
        updated = JobUpdate.model_validate({"targets_text": "0822 | yo"}).apply(self.job(), tz=UTC)
        assert updated.recipients == [Recipient(address="62822", text="yo")]

    def test_clearing_anchor_rejected(self):
        with pytest.raises(ValueError):
            JobUpdate.model_validate({"anchor_time": None}).apply(self.job(), tz=UTC)

    def test_switch_to_interval_without_value_rejected(self):
        job = self.job(repeat=RepeatPolicy.DAILY, interval_n=None, next_run_at=None)
        with pytest.raises(ValueError):
            JobUpdate.model_validate({"repeat": "every_n_hours"}).apply(job, tz=UTC)


class TestJob:
    def test_reply_match_needs_sender_and_keyword(self):
        job = TestJobUpdate().job(stop_keyword="Stop")
        assert job.matches_reply("62811@c.us", "please STOP now")
        assert job.matches_reply("62811", "stop")
        assert not job.matches_reply("62899@c.us", "stop")
        assert not job.matches_reply("62811@c.us", "thanks")

    def test_no_keyword_never_matches(self):
        job = TestJobUpdate().job(stop_keyword=None)
        assert not job.matches_reply("62811@c.us", "stop")

    def test_interval_job_requires_interval(self):
        with pytest.raises(ValidationError):
            Job(id=1, recipients=[Recipient(address="1", text="x")], anchor_time=NOW, repeat="every_n_days")

    def test_document_roundtrip(self):
        job = TestJobUpdate().job()
        assert Job.model_validate(job.to_document()) == job
