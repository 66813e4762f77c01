# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Runtime configuration loaded from an INI file and ``NLS_*`` environment variables."""

from __future__ import annotations

import configparser
import os
from pathlib import Path


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with NLS_):
      NLS_CONFIG - Path to config.ini file (default: config.ini)
      NLS_LOG_LEVEL - Logging level (default: INFO)
      NLS_DATABASE - Database path or postgresql:// DSN (default: /data/newsletter.db)
      NLS_POOL_SIZE - PostgreSQL pool size (default: 10)
      NLS_HOST - Server host (default: 0.0.0.0)
      NLS_PORT - Server port (default: 8000)
      NLS_API_TOKEN - API authentication token
      NLS_BASE_URL - Public URL used in confirmation links (default: http://127.0.0.1:8000)
      NLS_EMAIL_BACKEND - Email transport, http or smtp (default: http)
      NLS_EMAIL_API_URL - Email API base URL
      NLS_EMAIL_API_TOKEN - Email API bearer token
      NLS_EMAIL_SENDER - Sender address
      NLS_EMAIL_TIMEOUT - Transport timeout in seconds (default: 10)
      NLS_SMTP_HOST, NLS_SMTP_PORT, NLS_SMTP_USER, NLS_SMTP_PASSWORD, NLS_SMTP_USE_TLS
      NLS_MAX_RETRIES - Delivery retries after the first attempt (default: 3)
      NLS_EMPTY_QUEUE_DELAY - Worker pause when the queue is empty (default: 10)
      NLS_ERROR_DELAY - Worker pause after an unexpected error (default: 1)
      NLS_CLAIM_LEASE_SECONDS - Claim lease on engines without row locks (default: 60)
      NLS_RUN_WORKER - Run worker and pruner inside the HTTP process (default: True)
      NLS_IDEMPOTENCY_RETENTION - Seconds an idempotency record is kept (default: 86400)
      NLS_PRUNE_INTERVAL - Seconds between pruning rounds (default: 1000)

    Config file sections/keys:
      [storage] database, pool_size
      [server] host, port, api_token, base_url
      [email] backend, api_url, api_token, sender, timeout_seconds,
              smtp_host, smtp_port, smtp_user, smtp_password, smtp_use_tls
      [delivery] max_retries, empty_queue_delay, error_delay, claim_lease_seconds, run_worker
      [idempotency] retention_seconds, prune_interval
    """
    path = Path(config_path or os.getenv("NLS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

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

    settings: dict[str, object] = {
        "log_level": os.getenv("NLS_LOG_LEVEL", "INFO").upper(),
        "database": get("storage", "database", os.getenv("NLS_DATABASE", "/data/newsletter.db")),
        "pool_size": get_int("storage", "pool_size", os.getenv("NLS_POOL_SIZE"), default=10),
        "http_host": get("server", "host", os.getenv("NLS_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("NLS_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("NLS_API_TOKEN")),
        "base_url": get("server", "base_url", os.getenv("NLS_BASE_URL", "http://127.0.0.1:8000")),
        "email_backend": get("email", "backend", os.getenv("NLS_EMAIL_BACKEND", "http")),
        "email_api_url": get("email", "api_url", os.getenv("NLS_EMAIL_API_URL")),
        "email_api_token": get("email", "api_token", os.getenv("NLS_EMAIL_API_TOKEN")),
        "email_sender": get("email", "sender", os.getenv("NLS_EMAIL_SENDER")),
        "email_timeout": get_float("email", "timeout_seconds", os.getenv("NLS_EMAIL_TIMEOUT"), default=10.0),
        "smtp_host": get("email", "smtp_host", os.getenv("NLS_SMTP_HOST")),
        "smtp_port": get_int("email", "smtp_port", os.getenv("NLS_SMTP_PORT"), default=25),
        "smtp_user": get("email", "smtp_user", os.getenv("NLS_SMTP_USER")),
        "smtp_password": get("email", "smtp_password", os.getenv("NLS_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("email", "smtp_use_tls", os.getenv("NLS_SMTP_USE_TLS")),
        "max_retries": get_int("delivery", "max_retries", os.getenv("NLS_MAX_RETRIES"), default=3),
        "empty_queue_delay": get_float(
            "delivery", "empty_queue_delay", os.getenv("NLS_EMPTY_QUEUE_DELAY"), default=10.0
        ),
        "error_delay": get_float("delivery", "error_delay", os.getenv("NLS_ERROR_DELAY"), default=1.0),
        "claim_lease_seconds": get_int(
            "delivery", "claim_lease_seconds", os.getenv("NLS_CLAIM_LEASE_SECONDS"), default=60
        ),
        "run_worker": get_bool("delivery", "run_worker", os.getenv("NLS_RUN_WORKER"), default=True),
        "idempotency_retention": get_int(
            "idempotency",
            "retention_seconds",
            os.getenv("NLS_IDEMPOTENCY_RETENTION"),
            default=24 * 3600,
        ),
        "prune_interval": get_float(
            "idempotency", "prune_interval", os.getenv("NLS_PRUNE_INTERVAL"), default=1000.0
        ),
    }

    database = settings["database"]
    if isinstance(database, str) and not database.startswith(("postgres", "sqlite:")):
        settings["database"] = os.path.expanduser(database)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    base_url = settings.get("base_url")
    if isinstance(base_url, str):
        settings["base_url"] = base_url.rstrip("/")
    return settings
