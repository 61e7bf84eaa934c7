# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for scheduled jobs.

This module defines the persisted ``Job`` document and the payloads accepted
at the CRUD boundary, together with the helpers that turn the free-form
recipient text into a normalized recipient list.

Models:
    - Recipient: One (address, text) delivery target
    - Job: Persisted scheduled-send directive
    - JobCreate: Payload for creating a job
    - JobUpdate: Partial payload for updating a job
"""

from __future__ import annotations

import re
from datetime import datetime, tzinfo
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .recurrence import RepeatPolicy
from .window import parse_hhmm

DEFAULT_COUNTRY_CODE = "62"
DEFAULT_DISPATCH_GAP_SECONDS = 2
GROUP_SUFFIX = "@g.us"
CONTACT_SUFFIX = "@c.us"

_SEPARATORS = re.compile(r"[;,]+")
_STRIP = re.compile(r"[\s-]")


def normalize_address(value: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Normalize a recipient address.

    Group ids are returned unchanged, a leading ``+`` is dropped and a local
    number starting with ``0`` gets ``country_code`` in place of the ``0``.
    """
    address = _STRIP.sub("", str(value or "").strip())
    if address.endswith(GROUP_SUFFIX):
        return address
    if address.startswith("+"):
        return address[1:]
    if address.startswith("0"):
        return country_code + address[1:]
    return address


def to_chat_id(address: str) -> str:
    """Transport chat id for a normalized address."""
    if address.endswith(GROUP_SUFFIX) or address.endswith(CONTACT_SUFFIX):
        return address
    return f"{address}{CONTACT_SUFFIX}"


def contains_keyword(text: str | None, keyword: str | None) -> bool:
    """Case-insensitive substring test; an empty keyword never matches."""
    needle = str(keyword or "").strip().lower()
    if not needle:
        return False
    return needle in str(text or "").lower()


def localize(value: datetime | None, tz: tzinfo | None) -> datetime | None:
    """Attach ``tz`` to a naive timestamp, leave aware ones untouched."""
    if value is None or value.tzinfo is not None or tz is None:
        return value
    return value.replace(tzinfo=tz)


class Recipient(BaseModel):
    """One delivery target of a job."""

    model_config = ConfigDict(frozen=True)

    address: Annotated[str, Field(min_length=1)]
    text: Annotated[str, Field(min_length=1)]


def parse_recipients(
    targets_text: str,
    default_message: str = "",
    country_code: str = DEFAULT_COUNTRY_CODE,
) -> list[Recipient]:
    """Parse the multi-line ``targets | message`` form into recipients.

    Each line holds one or more targets separated by ``,`` or ``;``, then
    optionally ``|`` and the message for those targets (the message may itself
    contain ``|``). Lines without a message use ``default_message``. Targets
    without any message are dropped. Duplicate (address, text) pairs are
    removed, keeping the first occurrence.
    """
    items: list[Recipient] = []
    seen: set[tuple[str, str]] = set()
    for raw_line in str(targets_text or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        left, _, right = line.partition("|")
        message = right.strip() or str(default_message or "")
        if not message:
            continue
        for target in _SEPARATORS.split(left):
            target = target.strip()
            if not target:
                continue
            address = normalize_address(target, country_code)
            if not address or (address, message) in seen:
                continue
            seen.add((address, message))
            items.append(Recipient(address=address, text=message))
    return items


def _clamp_seconds(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    return max(0, int(float(value)))


def _check_window_bound(value: str | None) -> str | None:
    if value is None or str(value).strip() == "":
        return None
    if parse_hhmm(value) is None:
        raise ValueError("window bounds must be HH:MM")
    return str(value).strip()


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class Job(BaseModel):
    """Persisted scheduled-send directive.

    Attributes:
        id: Time-derived identifier, unique within the tenant.
        recipients: Ordered, de-duplicated delivery targets.
        targets_text: Raw recipient text the list was parsed from.
        default_message: Message used for lines without their own text.
        anchor_time: Reference instant for every recurrence computation.
        repeat: Repeat policy.
        interval_n: Multiplier for ``every_n_*`` policies.
        repeat_until: Instant after which the job retires.
        remaining_runs: Firings left before the job retires.
        stop_keyword: Reply substring that cancels the job.
        window_start: Daily window start (``HH:MM``).
        window_end: Daily window end (``HH:MM``).
        dispatch_gap_seconds: Pause between consecutive recipients.
        random_delay_min_seconds: Lower bound of per-recipient jitter.
        random_delay_max_seconds: Upper bound of per-recipient jitter.
        next_run_at: Persisted next firing of interval jobs.
        created_at: Creation instant.
    """

    model_config = ConfigDict(extra="ignore")

    id: int
    recipients: Annotated[list[Recipient], Field(min_length=1)]
    targets_text: str = ""
    default_message: str = ""
    anchor_time: datetime
    repeat: RepeatPolicy = RepeatPolicy.ONCE
    interval_n: Annotated[int | None, Field(default=None, ge=1)]
    repeat_until: datetime | None = None
    remaining_runs: int | None = None
    stop_keyword: str | None = None
    window_start: str | None = None
    window_end: str | None = None
    dispatch_gap_seconds: Annotated[int, Field(default=DEFAULT_DISPATCH_GAP_SECONDS, ge=0)]
    random_delay_min_seconds: Annotated[int, Field(default=0, ge=0)]
    random_delay_max_seconds: Annotated[int, Field(default=0, ge=0)]
    next_run_at: datetime | None = None
    created_at: datetime | None = None

    @model_validator(mode="after")
    def _check_interval(self) -> Job:
        if self.repeat.needs_interval and self.interval_n is None:
            raise ValueError(f"interval_n is required for {self.repeat.value}")
        return self

    def targets(self, address: str) -> bool:
        """True if ``address`` (bare or as chat id) is one of the recipients."""
        return any(address in (r.address, to_chat_id(r.address)) for r in self.recipients)

    def matches_reply(self, from_address: str, body: str) -> bool:
        return bool(self.stop_keyword) and self.targets(from_address) and contains_keyword(body, self.stop_keyword)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class JobCreate(BaseModel):
    """Payload for creating a job."""

    model_config = ConfigDict(extra="forbid")

    targets_text: Annotated[str, Field(min_length=1, description="Lines of 'targets | message'")]
    default_message: Annotated[str, Field(default="", description="Message for lines without one")]
    anchor_time: Annotated[datetime, Field(description="First/reference fire time")]
    repeat: Annotated[RepeatPolicy, Field(default=RepeatPolicy.ONCE)]
    interval_n: Annotated[int | None, Field(default=None, ge=1)]
    repeat_until: Annotated[datetime | None, Field(default=None)]
    repeat_count: Annotated[int | None, Field(default=None, ge=1, description="Number of firings")]
    stop_keyword: Annotated[str | None, Field(default=None)]
    window_start: Annotated[str | None, Field(default=None, description="HH:MM")]
    window_end: Annotated[str | None, Field(default=None, description="HH:MM")]
    dispatch_gap_seconds: Annotated[int, Field(default=DEFAULT_DISPATCH_GAP_SECONDS)]
    random_delay_min_seconds: Annotated[int, Field(default=0)]
    random_delay_max_seconds: Annotated[int, Field(default=0)]

    @field_validator("repeat_until", "repeat_count", "interval_n", "stop_keyword", mode="before")
    @classmethod
    def _blank(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("window_start", "window_end")
    @classmethod
    def _window(cls, v: str | None) -> str | None:
        return _check_window_bound(v)

    @field_validator("stop_keyword")
    @classmethod
    def _keyword(cls, v: str | None) -> str | None:
        return v.strip() or None if v is not None else None

    @field_validator("dispatch_gap_seconds", mode="before")
    @classmethod
    def _gap(cls, v: Any) -> int:
        return _clamp_seconds(v, DEFAULT_DISPATCH_GAP_SECONDS)

    @field_validator("random_delay_min_seconds", "random_delay_max_seconds", mode="before")
    @classmethod
    def _jitter(cls, v: Any) -> int:
        return _clamp_seconds(v, 0)

    @model_validator(mode="after")
    def _check_interval(self) -> JobCreate:
        if self.repeat.needs_interval:
            if self.interval_n is None:
                raise ValueError("interval value must be >= 1")
        else:
            self.interval_n = None
        return self

    def build(
        self,
        job_id: int,
        *,
        tz: tzinfo | None,
        country_code: str = DEFAULT_COUNTRY_CODE,
        now: datetime | None = None,
    ) -> Job:
        """Create the persisted job for this payload.

        Raises:
            ValueError: If no recipient survives parsing.
        """
        recipients = parse_recipients(self.targets_text, self.default_message.strip(), country_code)
        if not recipients:
            raise ValueError("No valid targets or messages")
        return Job(
            id=job_id,
            recipients=recipients,
            targets_text=self.targets_text,
            default_message=self.default_message.strip(),
            anchor_time=localize(self.anchor_time, tz),
            repeat=self.repeat,
            interval_n=self.interval_n,
            repeat_until=localize(self.repeat_until, tz),
            remaining_runs=self.repeat_count,
            stop_keyword=self.stop_keyword,
            window_start=self.window_start,
            window_end=self.window_end,
            dispatch_gap_seconds=self.dispatch_gap_seconds,
            random_delay_min_seconds=self.random_delay_min_seconds,
            random_delay_max_seconds=self.random_delay_max_seconds,
            created_at=now,
        )


class JobUpdate(BaseModel):
    """Partial update of a job.

    Only fields present in the payload are applied; an explicit ``null`` (or
    empty string) clears an optional field.
    """

    model_config = ConfigDict(extra="forbid")

    targets_text: str | None = None
    default_message: str | None = None
    anchor_time: datetime | None = None
    repeat: RepeatPolicy | None = None
    interval_n: Annotated[int | None, Field(default=None, ge=1)]
    repeat_until: datetime | None = None
    repeat_count: Annotated[int | None, Field(default=None, ge=1)]
    stop_keyword: str | None = None
    window_start: str | None = None
    window_end: str | None = None
    dispatch_gap_seconds: int | None = None
    random_delay_min_seconds: int | None = None
    random_delay_max_seconds: int | None = None

    @field_validator("repeat_until", "repeat_count", "interval_n", "stop_keyword", "anchor_time", mode="before")
    @classmethod
    def _blank(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("window_start", "window_end")
    @classmethod
    def _window(cls, v: str | None) -> str | None:
        return _check_window_bound(v)

    @field_validator("dispatch_gap_seconds", mode="before")
    @classmethod
    def _gap(cls, v: Any) -> int:
        return _clamp_seconds(v, DEFAULT_DISPATCH_GAP_SECONDS)

    @field_validator("random_delay_min_seconds", "random_delay_max_seconds", mode="before")
    @classmethod
    def _jitter(cls, v: Any) -> int:
        return _clamp_seconds(v, 0)

    def apply(self, job: Job, *, tz: tzinfo | None, country_code: str = DEFAULT_COUNTRY_CODE) -> Job:
        """Return a new job with this update applied.

        Raises:
            ValueError: If the result is not a valid job.
        """
        fields = self.model_fields_set
        data = job.model_dump()
        reset_cadence = False

        if "default_message" in fields:
            data["default_message"] = (self.default_message or "").strip()
        if "targets_text" in fields:
            recipients = parse_recipients(self.targets_text or "", data["default_message"], country_code)
            if not recipients:
                raise ValueError("No valid targets or messages")
            data["recipients"] = recipients
            data["targets_text"] = self.targets_text or ""
        if "anchor_time" in fields:
            if self.anchor_time is None:
                raise ValueError("anchor_time cannot be cleared")
            data["anchor_time"] = localize(self.anchor_time, tz)
            reset_cadence = True
        if "repeat" in fields and self.repeat is not None:
            data["repeat"] = self.repeat
            reset_cadence = True
            if not self.repeat.needs_interval:
                data["interval_n"] = None
        if "interval_n" in fields:
            data["interval_n"] = self.interval_n
            reset_cadence = True
        if "repeat_until" in fields:
            data["repeat_until"] = localize(self.repeat_until, tz)
        if "repeat_count" in fields:
            data["remaining_runs"] = self.repeat_count
        if "stop_keyword" in fields:
            data["stop_keyword"] = (self.stop_keyword or "").strip() or None
        for name in (
            "window_start",
            "window_end",
            "dispatch_gap_seconds",
            "random_delay_min_seconds",
            "random_delay_max_seconds",
        ):
            if name in fields:
                data[name] = getattr(self, name)
        if reset_cadence:
            data["next_run_at"] = None
        if RepeatPolicy(data["repeat"]).needs_interval and data.get("interval_n") is None:
            raise ValueError("interval value must be >= 1")
        return Job.model_validate(data)
