# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the message scheduler.

The actual logging setup (level, handlers, format) is configured via
``logging.basicConfig()`` in the entry point to avoid duplicate handlers.
This module only hands out named loggers and adds the per-tenant layer:

- ``TenantLogAdapter`` prefixes every record with ``[tenant_id]`` and tags it
  with a ``tenant_id`` attribute.
- ``TenantLogFiles`` mirrors tagged records into one file per tenant and
  supports tailing and clearing that file.

Example:
    Typical usage in a module::

        from async_msg_scheduler.logger import get_logger, TenantLogAdapter

        log = TenantLogAdapter(get_logger("Scheduler"), "acme")
        log.info("Armed job %s", 42)
"""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path
from typing import Any

ROOT_LOGGER_NAME = "AsyncMsgScheduler"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_TAIL_LINES = 300
MIN_TAIL_LINES = 50
MAX_TAIL_LINES = 2000


def get_logger(name: str | None = None) -> logging.Logger:
    """Retrieve a logger below the scheduler root logger.

    Args:
        name: Optional child name. ``None`` returns the root scheduler logger.

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class TenantLogAdapter(logging.LoggerAdapter):
    """Logger adapter binding every record to one tenant."""

    def __init__(self, logger: logging.Logger, tenant_id: str):
        super().__init__(logger, {"tenant_id": tenant_id})
        self.tenant_id = tenant_id

    def process(self, msg: Any, kwargs: dict[str, Any]) -> tuple[Any, dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("tenant_id", self.tenant_id)
        kwargs["extra"] = extra
        return f"[{self.tenant_id}] {msg}", kwargs


class _TenantFilter(logging.Filter):
    def __init__(self, tenant_id: str):
        super().__init__()
        self.tenant_id = tenant_id

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "tenant_id", None) == self.tenant_id


class TenantLogFiles:
    """One log file per tenant, fed from the scheduler root logger.

    Attributes:
        log_dir: Directory holding the ``msg-<tenant>.log`` files.
    """

    def __init__(self, log_dir: str | Path, logger: logging.Logger | None = None):
        self.log_dir = Path(log_dir)
        self._logger = logger or get_logger()
        self._handlers: dict[str, logging.Handler] = {}

    def path_for(self, tenant_id: str) -> Path:
        return self.log_dir / f"msg-{tenant_id}.log"

    def attach(self, tenant_id: str) -> None:
        """Start mirroring the tenant's records into its file (idempotent)."""
        if tenant_id in self._handlers:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(self.path_for(tenant_id), encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        handler.addFilter(_TenantFilter(tenant_id))
        self._logger.addHandler(handler)
        self._handlers[tenant_id] = handler

    def detach(self, tenant_id: str) -> None:
        handler = self._handlers.pop(tenant_id, None)
        if handler is None:
            return
        self._logger.removeHandler(handler)
        handler.close()

    def tail(self, tenant_id: str, lines: int | None = None) -> str:
        """Return the last ``lines`` lines of the tenant's log file.

        ``lines`` is clamped to 50..2000 and defaults to 300.
        """
        count = DEFAULT_TAIL_LINES if lines is None else max(MIN_TAIL_LINES, min(int(lines), MAX_TAIL_LINES))
        path = self.path_for(tenant_id)
        if not path.exists():
            return ""
        with path.open(encoding="utf-8") as fh:
            kept = deque((line.rstrip("\n") for line in fh if line.strip()), maxlen=count)
        return "\n".join(kept)

    def clear(self, tenant_id: str) -> None:
        path = self.path_for(tenant_id)
        if path.exists():
            path.write_text("", encoding="utf-8")

    def remove(self, tenant_id: str) -> None:
        """Detach the handler and delete the tenant's file."""
        self.detach(tenant_id)
        self.path_for(tenant_id).unlink(missing_ok=True)

    def close(self) -> None:
        for tenant_id in list(self._handlers):
            self.detach(tenant_id)
