# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Usage:
    uvicorn async_msg_scheduler.server:app --host 0.0.0.0 --port 8000

Configuration is read by :func:`async_msg_scheduler.config.load_settings`
(``config.ini`` or the file named by ``GMS_CONFIG``, with ``GMS_*``
environment variables as fallbacks).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import Settings, load_settings
from .core import SchedulerCore
from .logger import LOG_DATE_FORMAT, LOG_FORMAT


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )


def build_app(settings: Settings) -> FastAPI:
    """Create the core and the FastAPI application bound to its lifespan."""
    core = SchedulerCore(**settings.core_kwargs())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Starts and stops the scheduler core."""
        await core.start()
        yield
        await core.stop()

    return create_app(core, api_token=settings.api_token, lifespan=lifespan)


_settings = load_settings()
configure_logging(_settings.log_level)
app = build_app(_settings)
