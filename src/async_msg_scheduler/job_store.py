# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-tenant job collection with write-through persistence."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from pydantic import ValidationError

from .logger import TenantLogAdapter, get_logger
from .models import Job
from .persistence import Persistence


class JobStore:
    """In-memory mirror of one tenant's job collection.

    Every mutation rewrites the whole collection through ``Persistence``
    under a lock, so the document on disk always matches memory after the
    call returns. Documents that do not validate as ``Job`` are dropped at
    load time.

    Attributes:
        tenant_id: Owning tenant.
    """

    def __init__(
        self,
        tenant_id: str,
        persistence: Persistence,
        *,
        millis: Callable[[], int] | None = None,
        logger=None,
    ):
        self.tenant_id = tenant_id
        self.persistence = persistence
        self._jobs: dict[int, Job] = {}
        self._lock = asyncio.Lock()
        self._last_id = 0
        self._millis = millis or (lambda: time.time_ns() // 1_000_000)
        self.logger = logger or TenantLogAdapter(get_logger("JobStore"), tenant_id)

    async def load(self) -> list[Job]:
        """Load the collection from persistence, replacing memory."""
        docs = await self.persistence.read_collection(self.tenant_id)
        jobs: dict[int, Job] = {}
        for doc in docs:
            try:
                job = Job.model_validate(doc)
            except ValidationError as exc:
                self.logger.warning("Skipping invalid job document id=%s: %s", doc.get("id"), exc)
                continue
            jobs[job.id] = job
        self._jobs = jobs
        self._last_id = max(jobs, default=0)
        return self.list()

    def new_id(self) -> int:
        """Time-derived id, strictly greater than every id handed out so far."""
        job_id = max(self._millis(), self._last_id + 1)
        self._last_id = job_id
        return job_id

    def get(self, job_id: int) -> Job | None:
        return self._jobs.get(job_id)

    def __contains__(self, job_id: int) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def list(self) -> list[Job]:
        return list(self._jobs.values())

    async def put(self, job: Job) -> Job:
        """Insert or replace a job and persist the collection."""
        async with self._lock:
            self._jobs[job.id] = job
            self._last_id = max(self._last_id, job.id)
            await self._flush()
        return job

    async def replace(self, job: Job) -> bool:
        """Replace an existing job. Returns False, writing nothing, if it is gone."""
        async with self._lock:
            if job.id not in self._jobs:
                return False
            self._jobs[job.id] = job
            await self._flush()
        return True

    async def remove(self, job_id: int) -> bool:
        async with self._lock:
            if self._jobs.pop(job_id, None) is None:
                return False
            await self._flush()
        return True

    async def drop(self) -> None:
        """Forget every job and delete the persisted collection."""
        async with self._lock:
            self._jobs.clear()
            await self.persistence.delete_collection(self.tenant_id)

    async def _flush(self) -> None:
        await self.persistence.write_collection(
            self.tenant_id,
            [job.to_document() for job in self._jobs.values()],
        )
