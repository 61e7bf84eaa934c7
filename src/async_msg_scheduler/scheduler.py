# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-tenant job scheduler.

The scheduler owns one timer per job and drives every job through an explicit
state machine::

    UNARMED --arm--> ARMED --elapse--> FIRING --+--> QUEUED --complete--> ARMED
                                                |                    \\-> RETIRED
                                                +--> WAITING_WINDOW --> FIRING
                                                \\--> RETIRED

A firing re-reads the job from the store (an update may have happened after
arming), retires it if a terminal condition holds, defers it when the
delivery window is closed and otherwise hands a dispatch task to the tenant's
queue. The queue's completion callback decrements counters, retires or
computes and persists the next fire, and re-arms.

Timers live in a mapping from job id to the asyncio task waiting for the
fire time. Only the scheduler touches that mapping, and re-arming a job
always cancels its previous timer first.

Each firing and each completion is an isolation boundary: an exception is
logged, the job is left UNARMED and nothing else is affected. The job stays
unarmed until the next ``reschedule_all`` (for example on the client's next
ready event) instead of being retried in a loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from functools import partial

from .dispatch import DispatchQueue, DispatchReport, DispatchTask
from .job_store import JobStore
from .logger import TenantLogAdapter, get_logger
from .models import Job
from .recurrence import RepeatPolicy, compute_next_fire, interval_period, next_interval_fire, resolve_fire_time
from .window import delay_until_window, in_window


class SchedulerError(RuntimeError):
    """Base class for scheduler errors."""


class InvalidTransition(SchedulerError):
    """Raised on a state change the job state machine does not allow."""


class JobState(str, Enum):
    UNARMED = "unarmed"
    ARMED = "armed"
    FIRING = "firing"
    WAITING_WINDOW = "waiting_window"
    QUEUED = "queued"
    RETIRED = "retired"


TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.UNARMED: frozenset({JobState.ARMED, JobState.RETIRED}),
    JobState.ARMED: frozenset({JobState.ARMED, JobState.FIRING, JobState.UNARMED, JobState.RETIRED}),
    JobState.FIRING: frozenset(
        {JobState.ARMED, JobState.QUEUED, JobState.WAITING_WINDOW, JobState.UNARMED, JobState.RETIRED}
    ),
    JobState.WAITING_WINDOW: frozenset({JobState.ARMED, JobState.FIRING, JobState.UNARMED, JobState.RETIRED}),
    JobState.QUEUED: frozenset({JobState.ARMED, JobState.UNARMED, JobState.RETIRED}),
    JobState.RETIRED: frozenset(),
}


class FiringOutcome(str, Enum):
    QUEUED = "queued"
    DEFERRED = "deferred"
    RETIRED = "retired"
    MISSING = "missing"
    FAULTED = "faulted"


@dataclass(frozen=True)
class FiringResult:
    job_id: int
    outcome: FiringOutcome
    detail: str | None = None


class JobScheduler:
    """Timers and lifecycle of one tenant's jobs.

    Attributes:
        tenant_id: Owning tenant.
        store: The tenant's job store.
        queue: The tenant's dispatch queue.
    """

    def __init__(
        self,
        tenant_id: str,
        store: JobStore,
        queue: DispatchQueue,
        *,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        metrics=None,
        logger=None,
    ):
        self.tenant_id = tenant_id
        self.store = store
        self.queue = queue
        self.tz = tz or timezone.utc
        self._clock = clock or (lambda: datetime.now(self.tz))
        self._sleep = sleep or asyncio.sleep
        self.metrics = metrics
        self.logger = logger or TenantLogAdapter(get_logger("Scheduler"), tenant_id)
        self._timers: dict[int, asyncio.Task] = {}
        self._due: dict[int, datetime] = {}
        self._states: dict[int, JobState] = {}

    # ------------------------------------------------------------------ state
    def state_of(self, job_id: int) -> JobState:
        if job_id in self._states:
            return self._states[job_id]
        return JobState.UNARMED if job_id in self.store else JobState.RETIRED

    def due_at(self, job_id: int) -> datetime | None:
        """Fire time of the job's armed timer, if any."""
        return self._due.get(job_id)

    @property
    def armed_count(self) -> int:
        return len(self._timers)

    def _transition(self, job_id: int, new: JobState) -> None:
        current = self.state_of(job_id)
        if new not in TRANSITIONS[current]:
            raise InvalidTransition(f"job {job_id}: {current.value} -> {new.value}")
        self.logger.debug("Job id=%s %s -> %s", job_id, current.value, new.value)
        if new is JobState.RETIRED:
            self._states.pop(job_id, None)
        else:
            self._states[job_id] = new

    def _now(self) -> datetime:
        return self._clock()

    # ----------------------------------------------------------------- timers
    def _cancel_timer(self, job_id: int) -> None:
        task = self._timers.pop(job_id, None)
        self._due.pop(job_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._update_gauge()

    def _detach_timer(self, job_id: int) -> None:
        if self._timers.get(job_id) is asyncio.current_task():
            del self._timers[job_id]
            self._due.pop(job_id, None)
            self._update_gauge()

    def _start_timer(self, job_id: int, due: datetime, runner: Callable[[], Awaitable[None]]) -> None:
        self._cancel_timer(job_id)
        self._timers[job_id] = asyncio.create_task(runner(), name=f"job-{self.tenant_id}-{job_id}")
        self._due[job_id] = due
        self._update_gauge()

    async def _wait_until(self, due: datetime) -> None:
        # The sleep is monotonic; wall time may still be short of due on wake.
        while True:
            delay = (due - self._now()).total_seconds()
            if delay <= 0:
                return
            await self._sleep(delay)

    async def _timer(self, job_id: int, due: datetime) -> None:
        await self._wait_until(due)
        self._detach_timer(job_id)
        await self.fire(job_id)

    def cancel(self, job_id: int) -> None:
        """Cancel the job's timer synchronously; no further firing happens."""
        self._cancel_timer(job_id)
        if self.state_of(job_id) not in (JobState.UNARMED, JobState.RETIRED):
            self._transition(job_id, JobState.UNARMED)

    def cancel_all(self) -> None:
        for job_id in list(self._timers):
            self.cancel(job_id)

    def forget_all(self) -> None:
        """Cancel every timer and drop all state (tenant teardown)."""
        for job_id in list(self._timers):
            self._cancel_timer(job_id)
        self._states.clear()

    # ----------------------------------------------------------------- arming
    async def arm(self, job: Job) -> datetime | None:
        """(Re)arm the job's timer and return its fire time.

        Interval jobs persist the computed fire time as ``next_run_at`` so a
        restart resumes the same cadence. A job whose next fire falls after
        ``repeat_until`` is retired instead. Returns None if the job was
        retired or no longer exists.
        """
        self._cancel_timer(job.id)
        now = self._now()
        target = compute_next_fire(job.anchor_time, job.repeat, job.interval_n, job.next_run_at, now=now)
        due = resolve_fire_time(target, now)

        if job.repeat_until is not None and due > job.repeat_until:
            await self._retire(job.id, "RepeatUntil passed")
            return None

        if job.repeat.is_interval and job.next_run_at != due:
            job = job.model_copy(update={"next_run_at": due})
            if not await self.store.replace(job):
                self._states.pop(job.id, None)
                return None

        self._transition(job.id, JobState.ARMED)
        self._start_timer(job.id, due, partial(self._timer, job.id, due))
        self.logger.info("Scheduled job id=%s | type=%s next=%s", job.id, job.repeat.value, due.isoformat())
        return due

    async def reschedule_all(self) -> int:
        """Cancel every timer and re-arm every stored job.

        Jobs with a dispatch task still queued are left alone; their
        completion re-arms them. Jobs waiting for their window keep the
        deferred fire time. Returns the number of jobs armed.
        """
        armed = 0
        for job in self.store.list():
            if self.state_of(job.id) in (JobState.QUEUED, JobState.WAITING_WINDOW):
                continue
            self.cancel(job.id)
            try:
                if await self.arm(job) is not None:
                    armed += 1
            except Exception as exc:
                self.logger.exception("Arming failed for job id=%s: %s", job.id, exc)
                self.cancel(job.id)
        self.logger.info("Rescheduled all | count=%d armed=%d", len(self.store), armed)
        return armed

    # ----------------------------------------------------------------- firing
    async def fire(self, job_id: int) -> FiringResult:
        """Run one firing of the job. Never raises."""
        try:
            result = await self._fire(job_id)
        except Exception as exc:
            self.logger.exception("Job error id=%s: %s", job_id, exc)
            self._cancel_timer(job_id)
            if self.state_of(job_id) not in (JobState.UNARMED, JobState.RETIRED):
                self._transition(job_id, JobState.UNARMED)
            result = FiringResult(job_id, FiringOutcome.FAULTED, str(exc))
        if self.metrics:
            self.metrics.inc_firing(self.tenant_id, result.outcome.value)
        return result

    async def _fire(self, job_id: int) -> FiringResult:
        job = self.store.get(job_id)
        if job is None:
            self._cancel_timer(job_id)
            self._states.pop(job_id, None)
            self.logger.warning("Job tick but item missing -> cancel | id=%s", job_id)
            return FiringResult(job_id, FiringOutcome.MISSING)

        self.logger.debug("Tick job id=%s", job_id)
        self._transition(job_id, JobState.FIRING)
        self._cancel_timer(job_id)
        now = self._now()

        reason = self._terminal_reason(job, now)
        if reason:
            await self._retire(job_id, reason)
            return FiringResult(job_id, FiringOutcome.RETIRED, reason)

        if not in_window(now, job.window_start, job.window_end):
            wait = delay_until_window(now, job.window_start, job.window_end)
            due = now + wait
            self._transition(job_id, JobState.WAITING_WINDOW)
            self._start_timer(job_id, due, partial(self._timer, job_id, due))
            self.logger.debug("Outside window -> delay | id=%s wait=%ss", job_id, int(wait.total_seconds()))
            return FiringResult(job_id, FiringOutcome.DEFERRED, due.isoformat())

        self._transition(job_id, JobState.QUEUED)
        self.queue.enqueue(DispatchTask.for_job(job, on_complete=partial(self.complete, job_id)))
        return FiringResult(job_id, FiringOutcome.QUEUED)

    @staticmethod
    def _terminal_reason(job: Job, now: datetime) -> str | None:
        if job.repeat_until is not None and now > job.repeat_until:
            return "RepeatUntil passed"
        if job.remaining_runs is not None and job.remaining_runs <= 0:
            return "RemainingRuns <= 0"
        return None

    # ------------------------------------------------------------- completion
    async def complete(self, job_id: int, report: DispatchReport) -> None:
        """Dispatch completion: retire or advance and re-arm the job.

        Never raises. A failure leaves the job UNARMED, like a firing fault.
        """
        try:
            await self._complete(job_id, report)
        except Exception as exc:
            self.logger.exception("Completion error id=%s: %s", job_id, exc)
            self._cancel_timer(job_id)
            if self.state_of(job_id) not in (JobState.UNARMED, JobState.RETIRED):
                self._transition(job_id, JobState.UNARMED)

    async def _complete(self, job_id: int, report: DispatchReport) -> None:
        job = self.store.get(job_id)
        if job is None:
            self._states.pop(job_id, None)
            self.logger.debug("Completion for removed job id=%s ignored", job_id)
            return

        if not report.ready:
            if job.repeat is RepeatPolicy.ONCE:
                self._cancel_timer(job_id)
                if self.state_of(job_id) is not JobState.UNARMED:
                    self._transition(job_id, JobState.UNARMED)
                self.logger.warning("Not ready, once job id=%s left unarmed until next reschedule", job_id)
                return
            await self._rearm_next(job)
            return

        if job.repeat is RepeatPolicy.ONCE:
            await self._retire(job_id, "Once schedule done")
            return

        if job.remaining_runs is not None:
            remaining = job.remaining_runs - 1
            if remaining <= 0:
                await self._retire(job_id, "Repeat count ended")
                return
            job = job.model_copy(update={"remaining_runs": remaining})
            self.logger.debug("RemainingRuns updated | id=%s remaining=%d", job_id, remaining)

        if job.repeat_until is not None and self._now() > job.repeat_until:
            await self._retire(job_id, "RepeatUntil passed")
            return

        await self._rearm_next(job)

    async def _rearm_next(self, job: Job) -> None:
        if job.repeat.is_interval:
            period = interval_period(job.repeat, job.interval_n)
            job = job.model_copy(update={"next_run_at": next_interval_fire(job.anchor_time, period, self._now())})
        if job != self.store.get(job.id) and not await self.store.replace(job):
            self._states.pop(job.id, None)
            return
        await self.arm(job)

    async def _retire(self, job_id: int, reason: str) -> None:
        self._cancel_timer(job_id)
        await self.store.remove(job_id)
        if job_id in self._states:
            self._transition(job_id, JobState.RETIRED)
        self.logger.info("%s -> removed | id=%s", reason, job_id)

    # ------------------------------------------------------------------- CRUD
    def list_jobs(self) -> list[Job]:
        return self.store.list()

    async def create_job(self, job: Job) -> Job:
        """Persist and arm a new job."""
        await self.store.put(job)
        await self.arm(job)
        self.logger.info("Schedule created | id=%s repeat=%s", job.id, job.repeat.value)
        return self.store.get(job.id) or job

    async def update_job(self, job: Job) -> Job | None:
        """Persist a changed job and re-arm it. None if the job is gone."""
        if not await self.store.replace(job):
            return None
        self.cancel(job.id)
        await self.arm(job)
        self.logger.info("Schedule updated | id=%s", job.id)
        return self.store.get(job.id) or job

    async def delete_job(self, job_id: int) -> bool:
        """Cancel the job's timer and delete it."""
        self._cancel_timer(job_id)
        removed = await self.store.remove(job_id)
        self._cancel_timer(job_id)
        self._states.pop(job_id, None)
        if removed:
            self.logger.info("Schedule deleted | id=%s", job_id)
        return removed

    def _update_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_armed(self.tenant_id, len(self._timers))
