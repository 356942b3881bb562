"""
Shared configuration for TrainerGate core.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("trainergate")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _derive_effective_backend(db_backend: str) -> str:
    return db_backend if db_backend in {"postgres", "sqlite"} else "postgres"


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/trainergate.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE = _derive_effective_backend(DB_BACKEND)

# Database initialization controls
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("TRAINERGATE_MAX_RESULT_LIMIT", 100)
MAX_TEXT_LENGTH = _get_int("TRAINERGATE_MAX_TEXT_LENGTH", 8000)
MAX_SHORT_TEXT_LENGTH = _get_int("TRAINERGATE_MAX_SHORT_TEXT_LENGTH", 255)
MAX_PAYLOAD_BYTES = _get_int("TRAINERGATE_MAX_PAYLOAD_BYTES", 64000)
MAX_METADATA_BYTES = _get_int("TRAINERGATE_MAX_METADATA_BYTES", 20000)
MAX_LIST_ITEMS = _get_int("TRAINERGATE_MAX_LIST_ITEMS", 50)

# Event store
APPEND_RETRY_MAX = _get_int("TRAINERGATE_APPEND_RETRY_MAX", 5)
DEFAULT_SESSION_LIST_LIMIT = _get_int("TRAINERGATE_DEFAULT_SESSION_LIST_LIMIT", 10)

# Reasoning engine
REASONING_ENGINE_URL = os.environ.get("REASONING_ENGINE_URL")
REASONING_ENGINE_API_KEY = os.environ.get("REASONING_ENGINE_API_KEY")
REASONING_MODEL = os.environ.get("REASONING_MODEL", "default")
REASONING_TIMEOUT_SECONDS = _get_float("REASONING_TIMEOUT_SECONDS", 60.0)
REASONING_RETRY_MAX = _get_int("REASONING_RETRY_MAX", 2)
REASONING_RETRY_BACKOFF_SECONDS = _get_float("REASONING_RETRY_BACKOFF_SECONDS", 0.5)
REASONING_RETRY_JITTER_SECONDS = _get_float("REASONING_RETRY_JITTER_SECONDS", 0.25)
REASONING_FAILURE_THRESHOLD = _get_int("REASONING_FAILURE_THRESHOLD", 5)
REASONING_COOLDOWN_SECONDS = _get_int("REASONING_COOLDOWN_SECONDS", 60)

# Workout history paging
WORKOUT_HISTORY_DEFAULT_LIMIT = _get_int("WORKOUT_HISTORY_DEFAULT_LIMIT", 20)
WORKOUT_HISTORY_MAX_LIMIT = _get_int("WORKOUT_HISTORY_MAX_LIMIT", 50)

# Distribution tracking
DISTRIBUTION_BAND = _get_float("DISTRIBUTION_BAND", 0.05)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    DB_BACKEND_EFFECTIVE = _derive_effective_backend(DB_BACKEND)

    if APPEND_RETRY_MAX < 1:
        errors.append("TRAINERGATE_APPEND_RETRY_MAX must be at least 1")
    if MAX_RESULT_LIMIT < 1:
        errors.append("TRAINERGATE_MAX_RESULT_LIMIT must be at least 1")
    if not 0.0 <= DISTRIBUTION_BAND < 1.0:
        errors.append("DISTRIBUTION_BAND must be between 0.0 and 1.0")

    if not REASONING_ENGINE_URL:
        logger.warning(
            "REASONING_ENGINE_URL is not configured; instruction edits and generation are disabled."
        )

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
