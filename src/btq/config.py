from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path


def _get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} must be an int, got: {raw!r}") from e
    return value


def _get_env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Environment variable {name} must be a boolean, got: {raw!r}")


@dataclass(frozen=True)
class Settings:
    # Database
    db_path: Path

    # Worker pool
    max_concurrent_tasks: int
    sched_tick_ms: int
    lease_ms: int
    heartbeat_ms: int

    # Retention
    retention_ms: int
    sweep_interval_ms: int
    sweep_enabled: bool
    cleanup_uploads_on_complete: bool
    builds_dir: Path
    uploads_dir: Path

    # Builder collaborator
    builder: str
    mock_step_ms: int

    # Server (used by btq.main when starting uvicorn programmatically)
    host: str
    port: int
    log_level: str

    @property
    def retention_hours(self) -> float:
        return self.retention_ms / 3_600_000


def load_settings() -> Settings:
    """
    Loads settings from env vars with sane defaults.

    Env vars:
      - BTQ_DB_PATH (default: ./var/tasks.db)
      - BTQ_MAX_CONCURRENT (default: 2)
      - BTQ_SCHED_TICK_MS (default: 200)
      - BTQ_LEASE_MS (default: 60000)
      - BTQ_HEARTBEAT_MS (default: 5000)
      - BTQ_RETENTION_MS (default: 7200000, two hours)
      - BTQ_SWEEP_INTERVAL_MS (default: 1800000, thirty minutes)
      - BTQ_SWEEP_ENABLED (default: true)
      - BTQ_CLEANUP_UPLOADS_ON_COMPLETE (default: true)
      - BTQ_BUILDS_DIR (default: ./builds)
      - BTQ_UPLOADS_DIR (default: <system tmp>/btq-uploads)
      - BTQ_BUILDER (default: btq.builders.mock:MockBuilder)
      - BTQ_MOCK_STEP_MS (default: 1000)
      - BTQ_HOST (default: 127.0.0.1)
      - BTQ_PORT (default: 8000)
      - BTQ_LOG_LEVEL (default: info)
    """
    db_path = Path(_get_env_str("BTQ_DB_PATH", "./var/tasks.db")).expanduser()

    max_concurrent = _get_env_int("BTQ_MAX_CONCURRENT", 2)
    if max_concurrent <= 0:
        raise ValueError("BTQ_MAX_CONCURRENT must be > 0")

    sched_tick_ms = _get_env_int("BTQ_SCHED_TICK_MS", 200)
    if sched_tick_ms <= 0:
        raise ValueError("BTQ_SCHED_TICK_MS must be > 0")

    lease_ms = _get_env_int("BTQ_LEASE_MS", 60_000)
    if lease_ms <= 0:
        raise ValueError("BTQ_LEASE_MS must be > 0")

    heartbeat_ms = _get_env_int("BTQ_HEARTBEAT_MS", 5_000)
    if heartbeat_ms <= 0:
        raise ValueError("BTQ_HEARTBEAT_MS must be > 0")
    if heartbeat_ms >= lease_ms:
        raise ValueError("BTQ_HEARTBEAT_MS must be smaller than BTQ_LEASE_MS")

    retention_ms = _get_env_int("BTQ_RETENTION_MS", 2 * 3_600_000)
    if retention_ms <= 0:
        raise ValueError("BTQ_RETENTION_MS must be > 0")

    sweep_interval_ms = _get_env_int("BTQ_SWEEP_INTERVAL_MS", 30 * 60_000)
    if sweep_interval_ms <= 0:
        raise ValueError("BTQ_SWEEP_INTERVAL_MS must be > 0")

    mock_step_ms = _get_env_int("BTQ_MOCK_STEP_MS", 1_000)
    if mock_step_ms < 0:
        raise ValueError("BTQ_MOCK_STEP_MS must be >= 0")

    builds_dir = Path(_get_env_str("BTQ_BUILDS_DIR", "./builds")).expanduser()
    uploads_dir = Path(
        _get_env_str("BTQ_UPLOADS_DIR", str(Path(tempfile.gettempdir()) / "btq-uploads"))
    ).expanduser()

    host = _get_env_str("BTQ_HOST", "127.0.0.1")
    port = _get_env_int("BTQ_PORT", 8000)
    if not (1 <= port <= 65535):
        raise ValueError("BTQ_PORT must be between 1 and 65535")

    log_level = _get_env_str("BTQ_LOG_LEVEL", "info").lower()

    return Settings(
        db_path=db_path,
        max_concurrent_tasks=max_concurrent,
        sched_tick_ms=sched_tick_ms,
        lease_ms=lease_ms,
        heartbeat_ms=heartbeat_ms,
        retention_ms=retention_ms,
        sweep_interval_ms=sweep_interval_ms,
        sweep_enabled=_get_env_bool("BTQ_SWEEP_ENABLED", True),
        cleanup_uploads_on_complete=_get_env_bool("BTQ_CLEANUP_UPLOADS_ON_COMPLETE", True),
        builds_dir=builds_dir,
        uploads_dir=uploads_dir,
        builder=_get_env_str("BTQ_BUILDER", "btq.builders.mock:MockBuilder"),
        mock_step_ms=mock_step_ms,
        host=host,
        port=port,
        log_level=log_level,
    )
