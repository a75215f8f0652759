# -*- coding: utf-8 -*-

import os
from typing import Dict


def _env_int(name: str, default: int) -> int:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "")).strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "off", "no"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = str(os.getenv(name, "")).strip() or default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


# Job store. An empty path keeps jobs in memory only.
JOB_STORE_PATH = str(os.getenv("JOB_STORE_PATH", "data/jobs.json")).strip()
JOB_RETENTION_S = max(60, _env_int("JOB_RETENTION_S", 24 * 3600))
JOB_MAX_LOG_LINES = max(0, _env_int("JOB_MAX_LOG_LINES", 0))
# Log appends are flushed to JOB_STORE_PATH at most this often; status changes are written at once.
JOB_LOG_FLUSH_S = max(0.0, _env_float("JOB_LOG_FLUSH_S", 1.0))

# Executor runner
RUNNER_WORKERS = max(1, _env_int("RUNNER_WORKERS", 4))

# Live log streaming
SSE_KEEPALIVE_S = max(1.0, _env_float("SSE_KEEPALIVE_S", 30.0))
SSE_SUBSCRIBER_QUEUE_SIZE = max(0, _env_int("SSE_SUBSCRIBER_QUEUE_SIZE", 1000))

# Client-side reconciliation
JOB_POLL_INTERVAL_S = max(0.1, _env_float("JOB_POLL_INTERVAL_S", 1.5))

# Identity is resolved by the authenticating proxy in front of the portal.
AUTH_USER_HEADER = str(os.getenv("AUTH_USER_HEADER", "X-Auth-User")).strip() or "X-Auth-User"
AUTH_ROLE_HEADER = str(os.getenv("AUTH_ROLE_HEADER", "X-Auth-Role")).strip() or "X-Auth-Role"
ADMIN_ROLE = str(os.getenv("ADMIN_ROLE", "admin")).strip() or "admin"

CORS_ORIGINS = _env_list("CORS_ORIGINS", "*")

# At most one active job per app
ENFORCE_SINGLE_ACTIVE_JOB = _env_bool("ENFORCE_SINGLE_ACTIVE_JOB", True)

JOB_COMMAND_PREFIX = "JOB_COMMAND_"


def job_commands() -> Dict[str, str]:
    """Return shell command templates keyed by job type.

    ``JOB_COMMAND_ENV_RESTART`` maps to the ``env-restart`` type.
    """

    commands: Dict[str, str] = {}
    for key, value in os.environ.items():
        if not key.startswith(JOB_COMMAND_PREFIX):
            continue
        template = str(value).strip()
        if not template:
            continue
        job_type = key[len(JOB_COMMAND_PREFIX):].lower().replace("_", "-")
        if job_type:
            commands[job_type] = template
    return commands
