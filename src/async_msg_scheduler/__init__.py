# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Multi-tenant scheduled message dispatcher.

This package schedules recurring message sends for many isolated tenants:

- One-shot, calendar (daily/weekly/monthly) and fixed-interval recurrence
- Daily delivery windows with overnight wrap
- Per-tenant ordered dispatch queue with retries and backoff
- Stop-on-reply keywords
- SQLite persistence that survives restarts
- FastAPI REST API, click CLI and Prometheus metrics

Example:
    Basic usage with the FastAPI application::

        from async_msg_scheduler.core import SchedulerCore
        from async_msg_scheduler.api import create_app

        core = SchedulerCore(db_path="/data/msg_scheduler.db")
        app = create_app(core, api_token="secret")
"""

__version__ = "0.1.0"
