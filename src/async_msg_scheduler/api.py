# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the message scheduler.

The HTTP surface is a thin layer over ``SchedulerCore.handle_command``:

- Tenant lifecycle: list, init, status, logout, delete
- Job CRUD per tenant
- Recent targets/messages and per-tenant log tail
- Gateway webhooks for connection changes and incoming messages
- Health check and Prometheus metrics

Every endpoint except ``/health`` requires the ``X-API-Token`` header when a
token is configured.

Example:
    Creating and running the API application::

        from async_msg_scheduler.core import SchedulerCore
        from async_msg_scheduler.api import create_app

        core = SchedulerCore(db_path="/data/msg_scheduler.db")
        app = create_app(core, api_token="secret-token")
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from .core import SchedulerCore
from .models import JobCreate, JobUpdate

logger = logging.getLogger(__name__)

service: SchedulerCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""

    ok: bool
    error: str | None = None


class BasicOkResponse(CommandStatus):
    message: str | None = None


class TenantsResponse(CommandStatus):
    tenants: list[str]


class TenantStatusResponse(CommandStatus):
    tenant_id: str
    ready: bool
    scheduled_count: int
    armed: int
    queue_length: int
    busy: bool


class JobsResponse(CommandStatus):
    model_config = ConfigDict(extra="allow")

    jobs: list[dict[str, Any]]


class JobResponse(CommandStatus):
    job: dict[str, Any]


class RecentResponse(CommandStatus):
    targets: list[str]
    messages: list[str]


class LogsResponse(CommandStatus):
    text: str


class ConnectionEvent(BaseModel):
    ready: bool


class ConnectionResponse(CommandStatus):
    ready: bool


class IncomingMessagePayload(BaseModel):
    from_address: str = Field(min_length=1)
    body: str = ""
    is_self: bool = False


class IncomingMessageResponse(CommandStatus):
    stopped: list[int]


def _checked(result: dict[str, Any]) -> dict[str, Any]:
    if result.get("ok"):
        return result
    code = status.HTTP_404_NOT_FOUND if result.get("code") == "not_found" else status.HTTP_400_BAD_REQUEST
    raise HTTPException(code, result.get("error") or "command failed")


def _service() -> SchedulerCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: SchedulerCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`SchedulerCore` executing each command.
    api_token:
        Optional secret protecting every endpoint but ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    api = FastAPI(title="Async Message Scheduler", lifespan=lifespan)
    api.state.api_token = api_token

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": jsonable_errors(exc)})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    # Tenants ---------------------------------------------------------------
    @api.get("/tenants", response_model=TenantsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_tenants():
        return _checked(await _service().handle_command("listTenants"))

    @api.post(
        "/tenants/{tenant_id}/init",
        response_model=TenantStatusResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def init_tenant(tenant_id: str):
        """Create the tenant if needed and start its client."""
        return _checked(await _service().handle_command("initTenant", {"tenant_id": tenant_id}))

    @api.get(
        "/tenants/{tenant_id}/status",
        response_model=TenantStatusResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def tenant_status(tenant_id: str):
        return _checked(await _service().handle_command("tenantStatus", {"tenant_id": tenant_id}))

    @api.post(
        "/tenants/{tenant_id}/logout",
        response_model=BasicOkResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def logout_tenant(tenant_id: str):
        return _checked(await _service().handle_command("logoutTenant", {"tenant_id": tenant_id}))

    @api.delete(
        "/tenants/{tenant_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency]
    )
    async def delete_tenant(tenant_id: str):
        """Delete a tenant with its jobs, recent history and log file."""
        return _checked(await _service().handle_command("deleteTenant", {"tenant_id": tenant_id}))

    # Jobs ------------------------------------------------------------------
    @api.get(
        "/tenants/{tenant_id}/jobs", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency]
    )
    async def list_jobs(tenant_id: str):
        return _checked(await _service().handle_command("listJobs", {"tenant_id": tenant_id}))

    @api.post(
        "/tenants/{tenant_id}/jobs",
        response_model=JobResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_201_CREATED,
        dependencies=[auth_dependency],
    )
    async def create_job(tenant_id: str, payload: JobCreate):
        data = payload.model_dump(exclude_unset=True)
        data["tenant_id"] = tenant_id
        return _checked(await _service().handle_command("createJob", data))

    @api.put(
        "/tenants/{tenant_id}/jobs/{job_id}",
        response_model=JobResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def update_job(tenant_id: str, job_id: int, payload: JobUpdate):
        data = payload.model_dump(exclude_unset=True)
        data.update(tenant_id=tenant_id, id=job_id)
        return _checked(await _service().handle_command("updateJob", data))

    @api.delete(
        "/tenants/{tenant_id}/jobs/{job_id}",
        response_model=BasicOkResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def delete_job(tenant_id: str, job_id: int):
        return _checked(await _service().handle_command("deleteJob", {"tenant_id": tenant_id, "id": job_id}))

    # Recent / logs ---------------------------------------------------------
    @api.get(
        "/tenants/{tenant_id}/recent", response_model=RecentResponse, response_model_exclude_none=True, dependencies=[auth_dependency]
    )
    async def get_recent(tenant_id: str):
        return _checked(await _service().handle_command("getRecent", {"tenant_id": tenant_id}))

    @api.delete(
        "/tenants/{tenant_id}/recent", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency]
    )
    async def clear_recent(tenant_id: str):
        return _checked(await _service().handle_command("clearRecent", {"tenant_id": tenant_id}))

    @api.get(
        "/tenants/{tenant_id}/logs", response_model=LogsResponse, response_model_exclude_none=True, dependencies=[auth_dependency]
    )
    async def tail_logs(tenant_id: str, lines: int | None = None):
        return _checked(await _service().handle_command("tailLogs", {"tenant_id": tenant_id, "lines": lines}))

    @api.delete(
        "/tenants/{tenant_id}/logs", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency]
    )
    async def clear_logs(tenant_id: str):
        return _checked(await _service().handle_command("clearLogs", {"tenant_id": tenant_id}))

    # Gateway webhooks ------------------------------------------------------
    @api.post(
        "/tenants/{tenant_id}/events/connection",
        response_model=ConnectionResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def connection_event(tenant_id: str, payload: ConnectionEvent):
        """Ready-state change reported by the messaging gateway."""
        data = {"tenant_id": tenant_id, "ready": payload.ready}
        return _checked(await _service().handle_command("connectionEvent", data))

    @api.post(
        "/tenants/{tenant_id}/events/message",
        response_model=IncomingMessageResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def incoming_message(tenant_id: str, payload: IncomingMessagePayload):
        """Incoming message reported by the messaging gateway."""
        data = payload.model_dump()
        data["tenant_id"] = tenant_id
        return _checked(await _service().handle_command("incomingMessage", data))

    return api


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors without the non-serializable ``ctx`` values."""
    return [{key: value for key, value in err.items() if key != "ctx"} for err in exc.errors()]
