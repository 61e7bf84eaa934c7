# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service configuration.

Settings come from an INI file (default ``config.ini``, overridden by
``GMS_CONFIG``) with ``GMS_*`` environment variables as fallbacks.

Environment variables:
  GMS_CONFIG - Path to config.ini file (default: config.ini)
  GMS_DB_PATH - Database path (default: /data/msg_scheduler.db)
  GMS_HOST - Server host (default: 0.0.0.0)
  GMS_PORT - Server port (default: 8000)
  GMS_API_TOKEN - API authentication token
  GMS_TIMEZONE - Timezone of naive timestamps and calendar rules (default: UTC)
  GMS_DEFAULT_COUNTRY_CODE - Prefix replacing a leading 0 in numbers (default: 62)
  GMS_TEST_MODE - Use the loopback messaging client (default: False)
  GMS_READY_TIMEOUT - Seconds a task waits for the client (default: 90)
  GMS_ATTEMPT_READY_TIMEOUT - Seconds an attempt waits for the client (default: 60)
  GMS_MAX_ATTEMPTS - Delivery attempts per recipient (default: 3)
  GMS_BACKOFF_BASE - Backoff seconds multiplied by the attempt number (default: 3)
  GMS_GATEWAY_URL - Messaging gateway base URL
  GMS_GATEWAY_TOKEN - Messaging gateway bearer token
  GMS_LOG_LEVEL - Logging level (default: INFO)
  GMS_LOG_DIR - Directory of per-tenant log files (default: logs)

Config file sections/keys:
  [storage] db_path
  [server] host, port, api_token
  [scheduler] timezone, default_country_code, test_mode
  [dispatch] ready_timeout_seconds, attempt_ready_timeout_seconds, max_attempts, backoff_base_seconds
  [gateway] url, token
  [logging] level, dir
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any


@dataclass
class Settings:
    db_path: str = "/data/msg_scheduler.db"
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    timezone: str = "UTC"
    default_country_code: str = "62"
    test_mode: bool = False
    ready_timeout_seconds: float = 90.0
    attempt_ready_timeout_seconds: float = 60.0
    max_attempts: int = 3
    backoff_base_seconds: float = 3.0
    gateway_url: str | None = None
    gateway_token: str | None = None
    log_level: str = "INFO"
    log_dir: str = "logs"

    def core_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``SchedulerCore``."""
        data = asdict(self)
        for key in ("host", "port", "api_token", "log_level", "timezone"):
            data.pop(key)
        data["timezone_name"] = self.timezone
        return data


def load_settings(config_path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Load settings from the INI file with environment variables as fallbacks."""
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("GMS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None, default: int) -> int:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None, default: float) -> float:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None, default: bool) -> bool:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_optional(section: str, option: str, fallback: str | None) -> str | None:
        value = get(section, option, fallback)
        if value is None:
            return None
        return value.strip() or None

    defaults = Settings()
    settings = Settings(
        db_path=os.path.expanduser(get("storage", "db_path", env.get("GMS_DB_PATH")) or defaults.db_path),
        host=get("server", "host", env.get("GMS_HOST")) or defaults.host,
        port=get_int("server", "port", env.get("GMS_PORT"), defaults.port),
        api_token=get_optional("server", "api_token", env.get("GMS_API_TOKEN")),
        timezone=get("scheduler", "timezone", env.get("GMS_TIMEZONE")) or defaults.timezone,
        default_country_code=get("scheduler", "default_country_code", env.get("GMS_DEFAULT_COUNTRY_CODE"))
        or defaults.default_country_code,
        test_mode=get_bool("scheduler", "test_mode", env.get("GMS_TEST_MODE"), defaults.test_mode),
        ready_timeout_seconds=get_float(
            "dispatch", "ready_timeout_seconds", env.get("GMS_READY_TIMEOUT"), defaults.ready_timeout_seconds
        ),
        attempt_ready_timeout_seconds=get_float(
            "dispatch",
            "attempt_ready_timeout_seconds",
            env.get("GMS_ATTEMPT_READY_TIMEOUT"),
            defaults.attempt_ready_timeout_seconds,
        ),
        max_attempts=get_int("dispatch", "max_attempts", env.get("GMS_MAX_ATTEMPTS"), defaults.max_attempts),
        backoff_base_seconds=get_float(
            "dispatch", "backoff_base_seconds", env.get("GMS_BACKOFF_BASE"), defaults.backoff_base_seconds
        ),
        gateway_url=get_optional("gateway", "url", env.get("GMS_GATEWAY_URL")),
        gateway_token=get_optional("gateway", "token", env.get("GMS_GATEWAY_TOKEN")),
        log_level=(get("logging", "level", env.get("GMS_LOG_LEVEL")) or defaults.log_level).upper(),
        log_dir=get("logging", "dir", env.get("GMS_LOG_DIR")) or defaults.log_dir,
    )
    if settings.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    return settings
