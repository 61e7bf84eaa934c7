# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-tenant dispatch queue.

Each tenant owns one ``DispatchQueue``. Tasks run strictly one at a time in
FIFO order on a single worker, so concurrent firings of different jobs are
flattened into one ordered send stream and no two sends of a tenant are ever
in flight together. The worker drains the queue and then exits; ``enqueue``
starts a new worker whenever none is running.

A task sends to its recipients in order. Each recipient gets optional jitter,
up to ``max_attempts`` delivery attempts with linear backoff
(``backoff_base_seconds * attempt``) and, afterwards, the task's gap. Failures
are recorded in the task's ``DispatchReport`` and never raised, so one bad
recipient does not abort the rest of the firing.
"""

from __future__ import annotations

import asyncio
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .logger import TenantLogAdapter, get_logger
from .messaging import MessagingClient, MessagingNotReady
from .models import Job, Recipient, to_chat_id

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 3.0
DEFAULT_READY_TIMEOUT_SECONDS = 90.0
DEFAULT_ATTEMPT_READY_TIMEOUT_SECONDS = 60.0


def calculate_backoff(attempt: int, base: float = DEFAULT_BACKOFF_BASE_SECONDS) -> float:
    """Delay after the ``attempt``-th failed attempt (1-based)."""
    return base * max(1, int(attempt))


@dataclass
class RecipientOutcome:
    """Delivery result for one recipient of a task."""

    address: str
    ok: bool
    attempts: int
    error: str | None = None


@dataclass
class DispatchReport:
    """What happened while executing one task.

    ``ready`` is False when the client never became ready and no recipient
    was attempted.
    """

    job_id: int
    ready: bool = True
    outcomes: list[RecipientOutcome] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)


CompletionCallback = Callable[[DispatchReport], Awaitable[None]]


@dataclass
class DispatchTask:
    """Send one job's recipient list now."""

    job_id: int
    recipients: list[Recipient]
    gap_seconds: int = 2
    jitter_min_seconds: int = 0
    jitter_max_seconds: int = 0
    on_complete: CompletionCallback | None = None

    @classmethod
    def for_job(cls, job: Job, on_complete: CompletionCallback | None = None) -> DispatchTask:
        return cls(
            job_id=job.id,
            recipients=list(job.recipients),
            gap_seconds=job.dispatch_gap_seconds,
            jitter_min_seconds=job.random_delay_min_seconds,
            jitter_max_seconds=job.random_delay_max_seconds,
            on_complete=on_complete,
        )


class DispatchQueue:
    """Strictly ordered, single-worker task queue of one tenant.

    Attributes:
        tenant_id: Owning tenant.
        client: Messaging client used for delivery.
    """

    def __init__(
        self,
        tenant_id: str,
        client: MessagingClient,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        ready_timeout_seconds: float = DEFAULT_READY_TIMEOUT_SECONDS,
        attempt_ready_timeout_seconds: float = DEFAULT_ATTEMPT_READY_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        randint: Callable[[int, int], int] | None = None,
        metrics=None,
        logger=None,
    ):
        self.tenant_id = tenant_id
        self.client = client
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_base = float(backoff_base_seconds)
        self._ready_timeout = float(ready_timeout_seconds)
        self._attempt_ready_timeout = float(attempt_ready_timeout_seconds)
        self._sleep = sleep or asyncio.sleep
        self._randint = randint or random.randint
        self.metrics = metrics
        self.logger = logger or TenantLogAdapter(get_logger("Dispatch"), tenant_id)
        self._pending: deque[DispatchTask] = deque()
        self._worker: asyncio.Task | None = None
        self._closed = False

    @property
    def queue_length(self) -> int:
        return len(self._pending)

    @property
    def busy(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def enqueue(self, task: DispatchTask) -> None:
        """Append a task and make sure a worker is draining the queue."""
        if self._closed:
            self.logger.warning("Queue closed, dropping task for job id=%s", task.job_id)
            return
        self._pending.append(task)
        self._update_gauge()
        if not self.busy:
            self._worker = asyncio.create_task(self._drain(), name=f"dispatch-{self.tenant_id}")

    async def join(self) -> None:
        """Wait until the queue is empty and the worker has exited."""
        while self.busy:
            await asyncio.shield(self._worker)

    async def close(self) -> None:
        """Discard pending tasks and stop the worker."""
        self._closed = True
        dropped = len(self._pending)
        self._pending.clear()
        self._update_gauge()
        if dropped:
            self.logger.info("Discarded %d queued task(s)", dropped)
        if self.busy:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
        self._worker = None

    async def _drain(self) -> None:
        while self._pending:
            task = self._pending.popleft()
            self._update_gauge()
            try:
                report = await self.execute(task)
            except Exception as exc:  # pragma: no cover - execute records its own failures
                self.logger.exception("Dispatch task for job id=%s failed: %s", task.job_id, exc)
                continue
            if task.on_complete is None:
                continue
            try:
                await task.on_complete(report)
            except Exception as exc:
                self.logger.exception("Completion callback for job id=%s failed: %s", task.job_id, exc)

    async def execute(self, task: DispatchTask) -> DispatchReport:
        """Send every recipient of ``task`` in order."""
        report = DispatchReport(job_id=task.job_id)
        if not self.client.ready:
            if not await self.client.wait_ready(self._ready_timeout):
                self.logger.warning("Not ready, skip sending for job id=%s", task.job_id)
                report.ready = False
                return report

        self.logger.info("Start sending job id=%s | targets=%d", task.job_id, len(task.recipients))
        for recipient in task.recipients:
            jitter = self._jitter(task)
            if jitter > 0:
                await self._sleep(jitter)
            outcome = await self._deliver(recipient)
            report.outcomes.append(outcome)
            if not outcome.ok:
                self.logger.error("Give up for target | %s", to_chat_id(recipient.address))
            if task.gap_seconds > 0:
                await self._sleep(task.gap_seconds)
        self.logger.info(
            "Done sending job id=%s | sent=%d failed=%d", task.job_id, report.sent, report.failed
        )
        return report

    def _jitter(self, task: DispatchTask) -> int:
        low, high = task.jitter_min_seconds, task.jitter_max_seconds
        if low <= 0 and high <= 0:
            return 0
        if high <= low:
            return max(0, low)
        return self._randint(low, high)

    async def _deliver(self, recipient: Recipient) -> RecipientOutcome:
        chat_id = to_chat_id(recipient.address)
        last_error: str | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                if not self.client.ready:
                    self.logger.warning("Not ready, waiting before attempt %d", attempt)
                    if not await self.client.wait_ready(self._attempt_ready_timeout):
                        raise MessagingNotReady("Client not ready (timeout)")
                self.logger.info("Sending attempt %d -> %s | len=%d", attempt, chat_id, len(recipient.text))
                if await self.client.send(recipient.address, recipient.text):
                    self.logger.info("SEND OK -> %s", chat_id)
                    if self.metrics:
                        self.metrics.inc_sent(self.tenant_id)
                    return RecipientOutcome(address=recipient.address, ok=True, attempts=attempt)
                last_error = "send reported failure"
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
            self.logger.error("SEND FAIL attempt %d -> %s | %s", attempt, chat_id, last_error)
            if self.metrics:
                self.metrics.inc_retry(self.tenant_id)
            await self._sleep(calculate_backoff(attempt, self._backoff_base))
        if self.metrics:
            self.metrics.inc_error(self.tenant_id)
        return RecipientOutcome(
            address=recipient.address,
            ok=False,
            attempts=self._max_attempts,
            error=last_error,
        )

    def _update_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_queue_length(self.tenant_id, len(self._pending))
