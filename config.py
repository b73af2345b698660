#!/usr/bin/env python
# config.py
import os
from typing import List

# This assumes config.py is at the root of your project
basedir = os.path.abspath(os.path.dirname(__file__))


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _get_csv_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name)
    source = raw if raw is not None else default
    return [token.strip() for token in source.split(",") if token and token.strip()]


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'change-me-ranksync-dev-key'

    # Database: created with its tables at startup.
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'ranksync.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Browser clients allowed to call the API and open event streams
    CORS_ALLOWED_ORIGINS = _get_csv_list(
        'CORS_ALLOWED_ORIGINS', 'http://localhost:3000,http://127.0.0.1:3000'
    )

    # Single-user mode: skip login and attribute every list to the system user
    LOGIN_DISABLED = _get_bool('AUTH_DISABLED', False)

    # Push channel
    SSE_HEARTBEAT_SECONDS = max(1, _get_int('SSE_HEARTBEAT_SECONDS', 15))
    READINESS_SUBSCRIBER_THRESHOLD = _get_int('READINESS_SUBSCRIBER_THRESHOLD', 1000)

    # Cached list read views
    LIST_CACHE_TTL_SECONDS = max(1, _get_int('LIST_CACHE_TTL_SECONDS', 60))
    LIST_CACHE_MAXSIZE = max(1, _get_int('LIST_CACHE_MAXSIZE', 512))

    # Year aggregate recompute workers
    AGGREGATE_WORKERS = max(1, _get_int('AGGREGATE_WORKERS', 1))

    # Client debounce windows (milliseconds), read by ListSession.from_config
    REORDER_DEBOUNCE_MS = _get_int('REORDER_DEBOUNCE_MS', 300)
    EDIT_DEBOUNCE_MS = _get_int('EDIT_DEBOUNCE_MS', 300)
    PUSH_DEBOUNCE_MS = _get_int('PUSH_DEBOUNCE_MS', 100)

    # Runtime behavior
    # Turn Flask debug on/off from env; default off to avoid noisy console
    DEBUG = _get_bool('DEBUG', False)
    # Control console logging; when disabled, logs go only to file
    ENABLE_CONSOLE_LOGS = _get_bool('ENABLE_CONSOLE_LOGS', False)
    LOG_DIR = os.getenv('LOG_DIR', os.path.join(basedir, 'log'))
