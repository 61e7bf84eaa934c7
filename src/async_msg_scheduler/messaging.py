# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Messaging client capability used by the scheduler.

The transport itself (connecting, authenticating, talking to the remote
network) lives outside this service. ``MessagingClient`` is the seam: it
tracks the ready state, forwards ready-state changes and incoming messages to
whoever subscribed, and declares the transport operations.

Two implementations ship with the service:

- ``GatewayClient`` talks to an HTTP messaging gateway with aiohttp. The
  gateway reports connection changes and incoming messages back through the
  service's webhook endpoints, which call ``set_ready`` and ``receive``.
- ``LoopbackClient`` is always ready and records what it would have sent;
  it backs ``test_mode`` and local development.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from .logger import TenantLogAdapter, get_logger
from .models import to_chat_id


class MessagingNotReady(RuntimeError):
    """Raised when a send is attempted while the client is not ready."""

    def __init__(self, message: str = "Client not ready"):
        super().__init__(message)
        self.code = "client_not_ready"


@dataclass(frozen=True)
class IncomingMessage:
    """A message received by a tenant's messaging identity."""

    from_address: str
    body: str
    is_self: bool = False


ReadyCallback = Callable[[bool], Awaitable[None]]
IncomingCallback = Callable[[IncomingMessage], Awaitable[None]]


class MessagingClient(ABC):
    """Base class for per-tenant messaging clients.

    Attributes:
        tenant_id: Owning tenant.
        on_ready_change: Awaited with the new state each time readiness flips.
        on_incoming: Awaited with every incoming message.
    """

    def __init__(self, tenant_id: str, logger=None):
        self.tenant_id = tenant_id
        self.logger = logger or TenantLogAdapter(get_logger("Messaging"), tenant_id)
        self.on_ready_change: ReadyCallback | None = None
        self.on_incoming: IncomingCallback | None = None
        self._ready = asyncio.Event()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    async def wait_ready(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the client to become ready."""
        if self.ready:
            return True
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return self.ready
        return True

    async def set_ready(self, ready: bool) -> None:
        """Record a ready-state change and notify the subscriber."""
        changed = ready != self.ready
        if ready:
            self._ready.set()
        else:
            self._ready.clear()
        if not changed:
            return
        self.logger.info("READY" if ready else "Not ready")
        if self.on_ready_change is not None:
            await self.on_ready_change(ready)

    async def receive(self, message: IncomingMessage) -> None:
        """Forward an incoming message to the subscriber."""
        if self.on_incoming is not None:
            await self.on_incoming(message)

    @abstractmethod
    async def connect(self) -> None:
        """Start connecting; readiness is reported through ``set_ready``."""

    @abstractmethod
    async def send(self, address: str, text: str) -> bool:
        """Send ``text`` to ``address``. May raise on transport errors."""

    @abstractmethod
    async def logout(self) -> None:
        """End the messaging session, keeping the client object usable."""

    @abstractmethod
    async def destroy(self) -> None:
        """Release every resource held by the client."""


class GatewayClient(MessagingClient):
    """Client for an HTTP messaging gateway.

    Endpoints used, relative to ``base_url``:

    - ``POST /sessions/{tenant}/start`` -> ``{"ready": bool}``
    - ``POST /sessions/{tenant}/messages`` with ``{"chat_id", "text"}``
    - ``POST /sessions/{tenant}/logout``
    - ``DELETE /sessions/{tenant}``
    """

    def __init__(
        self,
        tenant_id: str,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        logger=None,
    ):
        super().__init__(tenant_id, logger=logger)
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _url(self, suffix: str = "") -> str:
        return f"{self.base_url}/sessions/{self.tenant_id}{suffix}"

    def _headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def _request(self, method: str, suffix: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.request(
                method,
                self._url(suffix),
                json=payload,
                headers=self._headers() or None,
            ) as resp:
                resp.raise_for_status()
                try:
                    data = await resp.json()
                except (aiohttp.ContentTypeError, ValueError):
                    return {}
                return data if isinstance(data, dict) else {}

    async def connect(self) -> None:
        try:
            data = await self._request("POST", "/start")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.warning("Gateway %s not reachable: %s", self.base_url, exc)
            return
        await self.set_ready(bool(data.get("ready")))

    async def send(self, address: str, text: str) -> bool:
        if not self.ready:
            raise MessagingNotReady()
        data = await self._request("POST", "/messages", {"chat_id": to_chat_id(address), "text": text})
        return data.get("ok", True) is not False

    async def logout(self) -> None:
        try:
            await self._request("POST", "/logout")
        finally:
            await self.set_ready(False)

    async def destroy(self) -> None:
        try:
            await self._request("DELETE", "")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.warning("Gateway session cleanup failed: %s", exc)
        await self.set_ready(False)


class LoopbackClient(MessagingClient):
    """Always-ready client that records sends instead of delivering them."""

    def __init__(self, tenant_id: str, logger=None):
        super().__init__(tenant_id, logger=logger)
        self.sent: list[tuple[str, str]] = []

    async def connect(self) -> None:
        await self.set_ready(True)

    async def send(self, address: str, text: str) -> bool:
        if not self.ready:
            raise MessagingNotReady()
        self.sent.append((address, text))
        self.logger.debug("Loopback send -> %s (len=%d)", to_chat_id(address), len(text))
        return True

    async def logout(self) -> None:
        await self.set_ready(False)

    async def destroy(self) -> None:
        await self.set_ready(False)
