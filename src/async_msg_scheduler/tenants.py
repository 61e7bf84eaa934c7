# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tenant registry.

A tenant bundles one messaging client, one job store, one dispatch queue and
one scheduler. ``TenantManager`` owns the mapping from tenant id to bundle and
its lifecycle: ``ensure`` creates and loads a tenant on first use, ``destroy``
tears it down and deletes its data, ``release_all`` tears every tenant down
at shutdown while keeping the data.

The manager also routes the client's events: a ``ready`` event re-arms every
job of the tenant and an incoming reply carrying a job's stop keyword from
one of its recipients retires that job.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from functools import partial
from typing import Any

from .dispatch import (
    DEFAULT_ATTEMPT_READY_TIMEOUT_SECONDS,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_READY_TIMEOUT_SECONDS,
    DispatchQueue,
)
from .job_store import JobStore
from .logger import TenantLogAdapter, TenantLogFiles, get_logger
from .messaging import IncomingMessage, MessagingClient
from .persistence import Persistence
from .recent import empty_recent, push_recent
from .scheduler import JobScheduler

TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

ClientFactory = Callable[[str], MessagingClient]


def validate_tenant_id(tenant_id: str) -> str:
    """Return ``tenant_id`` unchanged or raise ``ValueError``."""
    if not isinstance(tenant_id, str) or not TENANT_ID_PATTERN.match(tenant_id):
        raise ValueError("tenant id must be 1-64 characters of letters, digits, '_' or '-'")
    return tenant_id


@dataclass
class Tenant:
    tenant_id: str
    client: MessagingClient
    store: JobStore
    queue: DispatchQueue
    scheduler: JobScheduler
    logger: Any
    connect_task: asyncio.Task | None = None


class TenantManager:
    """Create, look up and tear down tenants.

    Attributes:
        persistence: Shared document store.
        log_files: Optional per-tenant log file manager.
        metrics: Optional ``SchedulerMetrics``.
    """

    def __init__(
        self,
        persistence: Persistence,
        client_factory: ClientFactory,
        *,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
        timer_sleep: Callable[[float], Awaitable[None]] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        randint: Callable[[int, int], int] | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        ready_timeout_seconds: float = DEFAULT_READY_TIMEOUT_SECONDS,
        attempt_ready_timeout_seconds: float = DEFAULT_ATTEMPT_READY_TIMEOUT_SECONDS,
        log_files: TenantLogFiles | None = None,
        metrics=None,
    ):
        self.persistence = persistence
        self.client_factory = client_factory
        self.tz = tz or timezone.utc
        self._clock = clock
        self._timer_sleep = timer_sleep
        self._sleep = sleep
        self._randint = randint
        self._dispatch_options = {
            "max_attempts": max_attempts,
            "backoff_base_seconds": backoff_base_seconds,
            "ready_timeout_seconds": ready_timeout_seconds,
            "attempt_ready_timeout_seconds": attempt_ready_timeout_seconds,
        }
        self.log_files = log_files
        self.metrics = metrics
        self.logger = get_logger("Tenants")
        self._tenants: dict[str, Tenant] = {}
        self._lock = asyncio.Lock()

    def get(self, tenant_id: str) -> Tenant | None:
        return self._tenants.get(tenant_id)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._tenants

    async def ensure(self, tenant_id: str) -> Tenant:
        """Return the tenant, creating and loading it on first use."""
        validate_tenant_id(tenant_id)
        async with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is not None:
                return tenant
            tenant = await self._build(tenant_id)
            self._tenants[tenant_id] = tenant
        tenant.connect_task = asyncio.create_task(self._connect(tenant), name=f"connect-{tenant_id}")
        return tenant

    async def _build(self, tenant_id: str) -> Tenant:
        if self.log_files is not None:
            self.log_files.attach(tenant_id)
        log = TenantLogAdapter(get_logger("Tenant"), tenant_id)
        client = self.client_factory(tenant_id)
        store = JobStore(tenant_id, self.persistence)
        jobs = await store.load()
        queue = DispatchQueue(
            tenant_id,
            client,
            sleep=self._sleep,
            randint=self._randint,
            metrics=self.metrics,
            **self._dispatch_options,
        )
        scheduler = JobScheduler(
            tenant_id,
            store,
            queue,
            tz=self.tz,
            clock=self._clock,
            sleep=self._timer_sleep,
            metrics=self.metrics,
        )
        tenant = Tenant(tenant_id, client, store, queue, scheduler, log)
        client.on_ready_change = partial(self._on_ready_change, tenant)
        client.on_incoming = partial(self.handle_reply, tenant_id)
        log.info("Tenant initialized | jobs=%d", len(jobs))
        return tenant

    async def _connect(self, tenant: Tenant) -> None:
        try:
            await tenant.client.connect()
        except Exception as exc:
            tenant.logger.error("Client connect failed: %s", exc)

    async def _on_ready_change(self, tenant: Tenant, ready: bool) -> None:
        if ready:
            await tenant.scheduler.reschedule_all()
        else:
            tenant.logger.warning("Client not ready, dispatch paused")

    async def bootstrap(self) -> list[str]:
        """Ensure every tenant that has persisted jobs."""
        tenant_ids = await self.persistence.list_tenants()
        for tenant_id in tenant_ids:
            try:
                await self.ensure(tenant_id)
            except ValueError as exc:
                self.logger.warning("Skipping tenant %r: %s", tenant_id, exc)
        return tenant_ids

    async def list_tenants(self) -> list[str]:
        """Tenants known on disk or live in memory."""
        on_disk = await self.persistence.list_tenants()
        return sorted(set(on_disk) | set(self._tenants))

    def status(self, tenant_id: str) -> dict[str, Any] | None:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            return None
        return {
            "tenant_id": tenant_id,
            "ready": tenant.client.ready,
            "scheduled_count": len(tenant.store),
            "armed": tenant.scheduler.armed_count,
            "queue_length": tenant.queue.queue_length,
            "busy": tenant.queue.busy,
        }

    async def logout(self, tenant_id: str) -> bool:
        """Cancel the tenant's timers and log its client out. Jobs are kept."""
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            return False
        tenant.scheduler.cancel_all()
        await tenant.client.logout()
        tenant.logger.info("Logged out")
        return True

    async def destroy(self, tenant_id: str) -> bool:
        """Tear the tenant down and delete all of its persisted data.

        Returns True if the tenant was live or had persisted documents.
        """
        validate_tenant_id(tenant_id)
        tenant = self._tenants.pop(tenant_id, None)
        if tenant is not None:
            await self._release(tenant)
            await tenant.store.drop()
        removed = await self.persistence.delete_tenant(tenant_id)
        if self.log_files is not None:
            self.log_files.remove(tenant_id)
        if self.metrics:
            self.metrics.forget(tenant_id)
        self.logger.info("Tenant %s deleted (jobs, recent history and log removed)", tenant_id)
        return tenant is not None or removed > 0

    async def release_all(self) -> None:
        """Stop every tenant, keeping persisted data."""
        tenants = list(self._tenants.values())
        self._tenants.clear()
        for tenant in tenants:
            await self._release(tenant)
            if self.log_files is not None:
                self.log_files.detach(tenant.tenant_id)

    async def _release(self, tenant: Tenant) -> None:
        tenant.scheduler.forget_all()
        await tenant.queue.close()
        if tenant.connect_task is not None and not tenant.connect_task.done():
            tenant.connect_task.cancel()
            await asyncio.gather(tenant.connect_task, return_exceptions=True)
        tenant.client.on_ready_change = None
        tenant.client.on_incoming = None
        try:
            await tenant.client.destroy()
        except Exception as exc:
            tenant.logger.warning("Client destroy failed: %s", exc)

    async def handle_reply(self, tenant_id: str, message: IncomingMessage) -> list[int]:
        """Retire every job whose stop keyword the reply carries.

        Self-sent messages are ignored. Returns the ids of the retired jobs.
        """
        tenant = self._tenants.get(tenant_id)
        if tenant is None or message.is_self:
            return []
        stopped: list[int] = []
        for job in tenant.scheduler.list_jobs():
            if not job.matches_reply(message.from_address, message.body):
                continue
            tenant.scheduler.cancel(job.id)
            tenant.logger.warning(
                'STOP repeat id=%s (reply contains "%s") from=%s', job.id, job.stop_keyword, message.from_address
            )
            if await tenant.scheduler.delete_job(job.id):
                stopped.append(job.id)
        return stopped

    # Recent history --------------------------------------------------------
    async def remember(self, tenant_id: str, targets_text: str, default_message: str) -> None:
        recent = await self.persistence.read_recent(tenant_id)
        await self.persistence.write_recent(tenant_id, push_recent(recent, targets_text, default_message))

    async def recent(self, tenant_id: str) -> dict[str, list[str]]:
        return await self.persistence.read_recent(tenant_id)

    async def clear_recent(self, tenant_id: str) -> None:
        await self.persistence.write_recent(tenant_id, empty_recent())
