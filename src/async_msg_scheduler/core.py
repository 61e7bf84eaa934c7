# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration for the scheduled message dispatcher.

``SchedulerCore`` wires persistence, the tenant manager, per-tenant log files
and metrics together and exposes a command-based API used by the HTTP layer.
Every command returns a dict with an ``ok`` flag; failures carry an ``error``
message and a ``code`` (``invalid`` or ``not_found``).

Example:
    Running the scheduler::

        from async_msg_scheduler.core import SchedulerCore

        core = SchedulerCore(db_path="/data/msg_scheduler.db", test_mode=True)
        await core.start()
        await core.handle_command("createJob", {
            "tenant_id": "acme",
            "targets_text": "08123456789 | hello",
            "anchor_time": "2025-01-01T09:00:00",
            "repeat": "daily",
        })
        await core.stop()
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from .dispatch import (
    DEFAULT_ATTEMPT_READY_TIMEOUT_SECONDS,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_READY_TIMEOUT_SECONDS,
)
from .logger import TenantLogFiles, get_logger
from .messaging import GatewayClient, IncomingMessage, LoopbackClient, MessagingClient
from .metrics import SchedulerMetrics
from .models import DEFAULT_COUNTRY_CODE, Job, JobCreate, JobUpdate
from .persistence import Persistence
from .tenants import ClientFactory, TenantManager, validate_tenant_id


class CommandError(Exception):
    """A command failed in a way the caller should see."""

    def __init__(self, message: str, code: str = "invalid"):
        super().__init__(message)
        self.code = code


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or str(exc)


class SchedulerCore:
    """Command facade over the tenant manager.

    Attributes:
        persistence: Shared document store.
        tenants: The tenant manager.
        log_files: Per-tenant log files, when a log directory is configured.
        metrics: Prometheus metrics collector.
    """

    def __init__(
        self,
        *,
        db_path: str = "/data/msg_scheduler.db",
        timezone_name: str = "UTC",
        default_country_code: str = DEFAULT_COUNTRY_CODE,
        log_dir: str | None = None,
        gateway_url: str | None = None,
        gateway_token: str | None = None,
        test_mode: bool = False,
        client_factory: ClientFactory | None = None,
        metrics: SchedulerMetrics | None = None,
        logger=None,
        clock: Callable[[], datetime] | None = None,
        timer_sleep: Callable[[float], Awaitable[None]] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        ready_timeout_seconds: float = DEFAULT_READY_TIMEOUT_SECONDS,
        attempt_ready_timeout_seconds: float = DEFAULT_ATTEMPT_READY_TIMEOUT_SECONDS,
    ):
        self.logger = logger or get_logger("Core")
        self.tz = ZoneInfo(timezone_name)
        self.country_code = default_country_code
        self._gateway_url = gateway_url
        self._gateway_token = gateway_token
        self._test_mode = test_mode
        self._clock = clock or (lambda: datetime.now(self.tz))
        self.persistence = Persistence(db_path)
        self.metrics = metrics or SchedulerMetrics()
        self.log_files = TenantLogFiles(log_dir) if log_dir else None
        self.tenants = TenantManager(
            self.persistence,
            client_factory or self._default_client,
            tz=self.tz,
            clock=self._clock,
            timer_sleep=timer_sleep,
            sleep=sleep,
            max_attempts=max_attempts,
            backoff_base_seconds=backoff_base_seconds,
            ready_timeout_seconds=ready_timeout_seconds,
            attempt_ready_timeout_seconds=attempt_ready_timeout_seconds,
            log_files=self.log_files,
            metrics=self.metrics,
        )

    def _default_client(self, tenant_id: str) -> MessagingClient:
        if self._test_mode or not self._gateway_url:
            return LoopbackClient(tenant_id)
        return GatewayClient(tenant_id, self._gateway_url, token=self._gateway_token)

    async def start(self) -> None:
        """Initialize storage and bring up every persisted tenant."""
        await self.persistence.init_db()
        if not self._test_mode and not self._gateway_url:
            self.logger.warning("No messaging gateway configured, using the loopback client")
        tenant_ids = await self.tenants.bootstrap()
        self.logger.info("Scheduler started | tenants=%d", len(tenant_ids))

    async def stop(self) -> None:
        """Stop every tenant. Persisted jobs are kept."""
        await self.tenants.release_all()
        if self.log_files is not None:
            self.log_files.close()
        self.logger.info("Scheduler stopped")

    # --------------------------------------------------------------- commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``createJob``, ``listJobs``, ``updateJob``, ``deleteJob``: job CRUD
        - ``initTenant``, ``tenantStatus``, ``logoutTenant``, ``deleteTenant``,
          ``listTenants``: tenant lifecycle
        - ``getRecent``, ``clearRecent``: recent targets and messages
        - ``tailLogs``, ``clearLogs``: per-tenant log file
        - ``connectionEvent``, ``incomingMessage``: gateway webhooks

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters; tenant commands need
                ``tenant_id``.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
        """
        payload = dict(payload or {})
        try:
            return await self._dispatch(cmd, payload)
        except ValidationError as exc:
            return {"ok": False, "error": _format_validation_error(exc), "code": "invalid"}
        except CommandError as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}
        except ValueError as exc:
            return {"ok": False, "error": str(exc), "code": "invalid"}

    async def _dispatch(self, cmd: str, payload: dict[str, Any]) -> dict[str, Any]:
        match cmd:
            case "listTenants":
                return {"ok": True, "tenants": await self.tenants.list_tenants()}
            case "initTenant":
                tenant = await self.tenants.ensure(self._tenant_id(payload))
                return {"ok": True, **self.tenants.status(tenant.tenant_id)}
            case "tenantStatus":
                tenant_id = self._tenant_id(payload)
                status = self.tenants.status(tenant_id)
                if status is None:
                    raise CommandError("tenant not initialized", "not_found")
                return {"ok": True, **status}
            case "logoutTenant":
                if not await self.tenants.logout(self._tenant_id(payload)):
                    raise CommandError("tenant not initialized", "not_found")
                return {"ok": True}
            case "deleteTenant":
                tenant_id = self._tenant_id(payload)
                if not await self.tenants.destroy(tenant_id):
                    raise CommandError("tenant not found", "not_found")
                return {"ok": True, "message": f"Tenant {tenant_id} deleted"}
            case "createJob":
                return await self._create_job(payload)
            case "listJobs":
                return {"ok": True, "jobs": await self._list_jobs(self._tenant_id(payload))}
            case "updateJob":
                return await self._update_job(payload)
            case "deleteJob":
                tenant_id = self._tenant_id(payload)
                job_id = self._job_id(payload)
                tenant = await self.tenants.ensure(tenant_id)
                if not await tenant.scheduler.delete_job(job_id):
                    raise CommandError("job not found", "not_found")
                return {"ok": True}
            case "getRecent":
                return {"ok": True, **await self.tenants.recent(self._tenant_id(payload))}
            case "clearRecent":
                await self.tenants.clear_recent(self._tenant_id(payload))
                return {"ok": True}
            case "tailLogs":
                tenant_id = self._tenant_id(payload)
                text = self.log_files.tail(tenant_id, payload.get("lines")) if self.log_files else ""
                return {"ok": True, "text": text}
            case "clearLogs":
                tenant_id = self._tenant_id(payload)
                if self.log_files is not None:
                    self.log_files.clear(tenant_id)
                return {"ok": True}
            case "connectionEvent":
                tenant = self._live_tenant(payload)
                await tenant.client.set_ready(bool(payload.get("ready")))
                return {"ok": True, "ready": tenant.client.ready}
            case "incomingMessage":
                tenant = self._live_tenant(payload)
                before = {job.id for job in tenant.store.list()}
                await tenant.client.receive(
                    IncomingMessage(
                        from_address=str(payload.get("from_address") or ""),
                        body=str(payload.get("body") or ""),
                        is_self=bool(payload.get("is_self", False)),
                    )
                )
                stopped = sorted(before - {job.id for job in tenant.store.list()})
                return {"ok": True, "stopped": stopped}
            case _:
                return {"ok": False, "error": "unknown command", "code": "invalid"}

    # ---------------------------------------------------------------- helpers
    @staticmethod
    def _tenant_id(payload: dict[str, Any]) -> str:
        return validate_tenant_id(payload.pop("tenant_id", None))

    @staticmethod
    def _job_id(payload: dict[str, Any]) -> int:
        raw = payload.pop("id", None)
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise CommandError("job id required") from None

    def _live_tenant(self, payload: dict[str, Any]):
        tenant = self.tenants.get(self._tenant_id(payload))
        if tenant is None:
            raise CommandError("tenant not initialized", "not_found")
        return tenant

    def _describe(self, tenant, job: Job) -> dict[str, Any]:
        doc = job.to_document()
        if tenant is not None:
            due = tenant.scheduler.due_at(job.id)
            doc["state"] = tenant.scheduler.state_of(job.id).value
            doc["next_fire_at"] = due.isoformat() if due else None
        return doc

    async def _list_jobs(self, tenant_id: str) -> list[dict[str, Any]]:
        tenant = self.tenants.get(tenant_id)
        if tenant is not None:
            jobs = tenant.store.list()
        else:
            jobs = []
            for doc in await self.persistence.read_collection(tenant_id):
                try:
                    jobs.append(Job.model_validate(doc))
                except ValidationError:
                    continue
        return [self._describe(tenant, job) for job in sorted(jobs, key=lambda j: j.id)]

    async def _create_job(self, payload: dict[str, Any]) -> dict[str, Any]:
        tenant_id = self._tenant_id(payload)
        request = JobCreate.model_validate(payload)
        tenant = await self.tenants.ensure(tenant_id)
        job = request.build(tenant.store.new_id(), tz=self.tz, country_code=self.country_code, now=self._clock())
        job = await tenant.scheduler.create_job(job)
        await self.tenants.remember(tenant_id, job.targets_text, job.default_message)
        return {"ok": True, "job": self._describe(tenant, job)}

    async def _update_job(self, payload: dict[str, Any]) -> dict[str, Any]:
        tenant_id = self._tenant_id(payload)
        job_id = self._job_id(payload)
        request = JobUpdate.model_validate(payload)
        tenant = await self.tenants.ensure(tenant_id)
        current = tenant.store.get(job_id)
        if current is None:
            raise CommandError("job not found", "not_found")
        updated = await tenant.scheduler.update_job(request.apply(current, tz=self.tz, country_code=self.country_code))
        if updated is None:
            raise CommandError("job not found", "not_found")
        await self.tenants.remember(tenant_id, updated.targets_text, updated.default_message)
        return {"ok": True, "job": self._describe(tenant, updated)}
