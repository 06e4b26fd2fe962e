# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service settings from an INI file with environment variable fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any


def load_settings(config_path: str | None = None) -> dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with COMMS_):
      COMMS_CONFIG - Path to config.ini file (default: config.ini)
      COMMS_LOG_LEVEL - Logging level (default: INFO)
      COMMS_DB_PATH - Database path (default: /data/comms_dispatch.db)
      COMMS_HOST - Server host (default: 0.0.0.0)
      COMMS_PORT - Server port (default: 8000)
      COMMS_API_TOKEN - API authentication token
      COMMS_ACTIVE - Start with delivery workers active (default: True)
      COMMS_WORKER_CONCURRENCY - Number of delivery workers (default: 5)
      COMMS_POLL_INTERVAL - Idle worker poll interval in seconds (default: 1)
      COMMS_TEST_MODE - Enable test mode (default: False)
      COMMS_MAX_RETRIES - Default retries after the first attempt (default: 3)
      COMMS_RETRY_INTERVAL - Default delay between attempts, in retry units (default: 5)
      COMMS_RETRY_UNIT_SECONDS - Length of one retry unit (default: 60)
      COMMS_TIMEOUT - Provider call timeout in seconds (default: 30)
      COMMS_EXPIRE_AFTER - Seconds a scheduled send may stay unpicked (default: 86400)
      COMMS_VISIBILITY_TIMEOUT - Seconds before an abandoned job is redelivered (default: 300)
      COMMS_JOB_RETENTION_SECONDS - Retention for completed jobs (default: 7 days)
      COMMS_DEFAULT_COUNTRY_CODE - Country code for local phone numbers (default: 254)
      COMMS_LOG_DELIVERY_ACTIVITY - Log delivery activity (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [delivery] active, worker_concurrency, poll_interval_seconds, test_mode, max_retries,
                 retry_interval, retry_unit_seconds, timeout_seconds, expire_after_seconds,
                 visibility_timeout_seconds, job_retention_seconds
      [sms] default_country_code
      [logging] delivery_activity
      [providers], [templates] see :mod:`comms_dispatch.config_loader`
    """
    config_path = Path(config_path or os.getenv("COMMS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    settings: dict[str, Any] = {
        "config_path": str(config_path),
        "db_path": get("storage", "db_path", os.getenv("COMMS_DB_PATH", "/data/comms_dispatch.db")),
        "http_host": get("server", "host", os.getenv("COMMS_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("COMMS_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("COMMS_API_TOKEN")),
        "start_active": get_bool("delivery", "active", os.getenv("COMMS_ACTIVE"), True),
        "worker_concurrency": get_int(
            "delivery", "worker_concurrency", os.getenv("COMMS_WORKER_CONCURRENCY"), default=5
        ),
        "poll_interval": get_float("delivery", "poll_interval_seconds", os.getenv("COMMS_POLL_INTERVAL"), default=1.0),
        "test_mode": get_bool("delivery", "test_mode", os.getenv("COMMS_TEST_MODE"), False),
        "max_retries": get_int("delivery", "max_retries", os.getenv("COMMS_MAX_RETRIES"), default=3),
        "retry_interval": get_float("delivery", "retry_interval", os.getenv("COMMS_RETRY_INTERVAL"), default=5),
        "retry_unit_seconds": get_int(
            "delivery", "retry_unit_seconds", os.getenv("COMMS_RETRY_UNIT_SECONDS"), default=60
        ),
        "timeout": get_float("delivery", "timeout_seconds", os.getenv("COMMS_TIMEOUT"), default=30),
        "expire_after": get_int(
            "delivery", "expire_after_seconds", os.getenv("COMMS_EXPIRE_AFTER"), default=24 * 3600
        ),
        "visibility_timeout": get_int(
            "delivery", "visibility_timeout_seconds", os.getenv("COMMS_VISIBILITY_TIMEOUT"), default=300
        ),
        "job_retention_seconds": get_int(
            "delivery",
            "job_retention_seconds",
            os.getenv("COMMS_JOB_RETENTION_SECONDS"),
            default=7 * 24 * 3600,
        ),
        "default_country_code": get("sms", "default_country_code", os.getenv("COMMS_DEFAULT_COUNTRY_CODE", "254")),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("COMMS_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings


def core_kwargs(settings: dict[str, Any]) -> dict[str, Any]:
    """Select the settings accepted by :class:`~comms_dispatch.core.CommsDispatchCore`."""
    keys = (
        "db_path",
        "start_active",
        "test_mode",
        "worker_concurrency",
        "poll_interval",
        "max_retries",
        "retry_interval",
        "retry_unit_seconds",
        "timeout",
        "expire_after",
        "visibility_timeout",
        "job_retention_seconds",
        "default_country_code",
        "log_delivery_activity",
    )
    return {key: settings[key] for key in keys if settings.get(key) is not None}


__all__ = ["core_kwargs", "load_settings"]
