"""Runtime configuration helpers for the datom replication service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Immutable container for service configuration."""

    source_dsn: str
    dest_dsn: str
    datom_schema: str = "datoms"
    start_t: Optional[int] = None
    poll_interval_ms: int = 100
    transient_pause_seconds: float = 10.0
    commit_timeout_ms: int = 30000
    log_batch_size: int = 1000
    metrics_port: int = 0
    log_level: str = "INFO"
    db_mode: str = "mock"


def _coerce_db_mode(value: Optional[str]) -> str:
    """Translate DB_MODE env var to a supported value."""
    if value is None:
        return "mock"
    normalized = value.strip().lower()
    if normalized in {"mock", "local"}:
        return normalized
    return "mock"


def _coerce_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("ignoring malformed %s=%r; using %d", name, raw, default)
        return default
    if value < minimum:
        logger.warning("ignoring out-of-range %s=%r; using %d", name, raw, default)
        return default
    return value


def _coerce_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning("ignoring malformed %s=%r; using %s", name, raw, default)
        return default
    if value < 0:
        logger.warning("ignoring negative %s=%r; using %s", name, raw, default)
        return default
    return value


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("ignoring malformed %s=%r", name, raw)
        return None


def _coerce_log_level(value: Optional[str]) -> str:
    if value is None:
        return "INFO"
    normalized = value.strip().upper()
    if normalized in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        return normalized
    return "INFO"


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    source_dsn = os.getenv("SOURCE_PG_DSN", "").strip()
    dest_dsn = os.getenv("DEST_PG_DSN", "").strip()
    datom_schema = os.getenv("DATOM_SCHEMA", "datoms").strip() or "datoms"

    return Settings(
        source_dsn=source_dsn,
        dest_dsn=dest_dsn,
        datom_schema=datom_schema,
        start_t=_optional_int("REPLICATION_START_T"),
        poll_interval_ms=_coerce_int("REPLICATION_POLL_INTERVAL_MS", 100, minimum=1),
        transient_pause_seconds=_coerce_float(
            "REPLICATION_TRANSIENT_PAUSE_SECONDS", 10.0
        ),
        commit_timeout_ms=_coerce_int("REPLICATION_COMMIT_TIMEOUT_MS", 30000),
        log_batch_size=_coerce_int("REPLICATION_LOG_BATCH_SIZE", 1000, minimum=1),
        metrics_port=_coerce_int("METRICS_PORT", 0),
        log_level=_coerce_log_level(os.getenv("LOG_LEVEL")),
        db_mode=_coerce_db_mode(os.getenv("DB_MODE")),
    )
