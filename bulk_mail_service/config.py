"""Service settings loaded from ``config.ini`` with ``BMS_*`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .attachments import DEFAULT_MAX_ATTACHMENT_BYTES, DEFAULT_MAX_ATTACHMENTS
from .core import DEFAULT_PUBLIC_BASE_URL, DEFAULT_SCHEDULER_INTERVAL


def load_settings(config_path: str | os.PathLike | None = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with BMS_):
      BMS_CONFIG - Path to config.ini file (default: config.ini)
      BMS_LOG_LEVEL - Logging level (default: INFO), read by main.py
      BMS_DB_PATH - Database path (default: /data/bulk_mail.db)
      BMS_HOST - Server host (default: 0.0.0.0)
      BMS_PORT - Server port (default: 8000)
      BMS_API_TOKEN - API authentication token
      BMS_PUBLIC_BASE_URL - Base URL embedded in tracking pixels
      BMS_SMTP_HOST / BMS_SMTP_PORT / BMS_SMTP_USER / BMS_SMTP_PASSWORD
      BMS_SMTP_USE_TLS - Implicit TLS (default: true when port is 465)
      BMS_SMTP_START_TLS - STARTTLS upgrade (default: false)
      BMS_SMTP_FROM - Sender address (default: SMTP user)
      BMS_SCHEDULER_ACTIVE - Promote scheduled jobs (default: True)
      BMS_SCHEDULER_INTERVAL - Seconds between scheduler polls (default: 30)
      BMS_TEST_MODE - Scheduler only runs on 'run now' (default: False)
      BMS_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)
      BMS_MAX_ATTACHMENTS - Attachments per request (default: 3)
      BMS_MAX_ATTACHMENT_BYTES - Size limit per attachment (default: 5 MiB)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token, public_base_url
      [smtp] host, port, user, password, use_tls, start_tls, from
      [scheduler] active, interval_seconds, test_mode
      [attachments] max_count, max_bytes
      [logging] delivery_activity
    """
    config_path = Path(config_path or os.getenv("BMS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
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
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    smtp_port = get_int("smtp", "port", os.getenv("BMS_SMTP_PORT"), default=587)
    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", os.getenv("BMS_DB_PATH", "/data/bulk_mail.db")),
        "http_host": get("server", "host", os.getenv("BMS_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("BMS_PORT"), default=8000),
        "api_token": get("server", "api_token", os.getenv("BMS_API_TOKEN")),
        "public_base_url": get(
            "server", "public_base_url", os.getenv("BMS_PUBLIC_BASE_URL", DEFAULT_PUBLIC_BASE_URL)
        ),
        "smtp_host": get("smtp", "host", os.getenv("BMS_SMTP_HOST")),
        "smtp_port": smtp_port,
        "smtp_user": get("smtp", "user", os.getenv("BMS_SMTP_USER")),
        "smtp_password": get("smtp", "password", os.getenv("BMS_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("smtp", "use_tls", os.getenv("BMS_SMTP_USE_TLS"), default=smtp_port == 465),
        "smtp_start_tls": get_bool("smtp", "start_tls", os.getenv("BMS_SMTP_START_TLS"), default=False),
        "smtp_from": get("smtp", "from", os.getenv("BMS_SMTP_FROM")),
        "scheduler_active": get_bool("scheduler", "active", os.getenv("BMS_SCHEDULER_ACTIVE"), default=True),
        "scheduler_interval": get_float(
            "scheduler",
            "interval_seconds",
            os.getenv("BMS_SCHEDULER_INTERVAL"),
            default=DEFAULT_SCHEDULER_INTERVAL,
        ),
        "test_mode": get_bool("scheduler", "test_mode", os.getenv("BMS_TEST_MODE"), default=False),
        "log_delivery_activity": get_bool(
            "logging", "delivery_activity", os.getenv("BMS_LOG_DELIVERY_ACTIVITY"), default=False
        ),
        "max_attachments": get_int(
            "attachments", "max_count", os.getenv("BMS_MAX_ATTACHMENTS"), default=DEFAULT_MAX_ATTACHMENTS
        ),
        "max_attachment_bytes": get_int(
            "attachments", "max_bytes", os.getenv("BMS_MAX_ATTACHMENT_BYTES"), default=DEFAULT_MAX_ATTACHMENT_BYTES
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token: Optional[str] = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    if not settings["smtp_from"]:
        settings["smtp_from"] = settings["smtp_user"]
    return settings
