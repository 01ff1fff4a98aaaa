from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} must be an int, got: {raw!r}") from e
    return value


def _get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} must be a number, got: {raw!r}") from e
    return value


def _get_env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _get_env_path(name: str) -> Optional[Path]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return Path(raw).expanduser()


@dataclass(frozen=True)
class Settings:
    # Persistence
    db_path: Path
    migrations_dir: Path
    checkpoint_interval_s: float

    # Loops
    loop_max_attempts: int
    loop_rules_file: Optional[Path]

    # Task runner
    runner_command: str
    runner_workers: int
    work_dir: Optional[Path]

    # Server (used by flowcore.main when starting uvicorn programmatically)
    host: str
    port: int
    log_level: str


def load_settings() -> Settings:
    """
    Loads settings from env vars with sane defaults.

    Env vars:
      - FLOWCORE_DB_PATH (default: ./var/flowcore.db)
      - FLOWCORE_MIGRATIONS_DIR (default: ./migrations)
      - FLOWCORE_CHECKPOINT_INTERVAL_S (default: 300)
      - FLOWCORE_LOOP_MAX_ATTEMPTS (default: 3)
      - FLOWCORE_LOOP_RULES_FILE (default: unset; JSON list of {pattern, condition})
      - FLOWCORE_RUNNER_COMMAND (default: {instructions})
      - FLOWCORE_RUNNER_WORKERS (default: 4)
      - FLOWCORE_WORK_DIR (default: unset; process cwd)
      - FLOWCORE_HOST (default: 127.0.0.1)
      - FLOWCORE_PORT (default: 8000)
      - FLOWCORE_LOG_LEVEL (default: info)
    """
    db_path = Path(_get_env_str("FLOWCORE_DB_PATH", "./var/flowcore.db")).expanduser()
    migrations_dir = Path(_get_env_str("FLOWCORE_MIGRATIONS_DIR", "migrations")).expanduser()

    checkpoint_interval_s = _get_env_float("FLOWCORE_CHECKPOINT_INTERVAL_S", 300.0)
    if checkpoint_interval_s <= 0:
        raise ValueError("FLOWCORE_CHECKPOINT_INTERVAL_S must be > 0")

    loop_max_attempts = _get_env_int("FLOWCORE_LOOP_MAX_ATTEMPTS", 3)
    if loop_max_attempts <= 0:
        raise ValueError("FLOWCORE_LOOP_MAX_ATTEMPTS must be > 0")

    loop_rules_file = _get_env_path("FLOWCORE_LOOP_RULES_FILE")
    if loop_rules_file is not None and not loop_rules_file.is_file():
        raise ValueError(f"FLOWCORE_LOOP_RULES_FILE does not exist: {loop_rules_file}")

    runner_command = _get_env_str("FLOWCORE_RUNNER_COMMAND", "{instructions}")

    runner_workers = _get_env_int("FLOWCORE_RUNNER_WORKERS", 4)
    if runner_workers <= 0:
        raise ValueError("FLOWCORE_RUNNER_WORKERS must be > 0")

    work_dir = _get_env_path("FLOWCORE_WORK_DIR")

    host = _get_env_str("FLOWCORE_HOST", "127.0.0.1")
    port = _get_env_int("FLOWCORE_PORT", 8000)
    if not (1 <= port <= 65535):
        raise ValueError("FLOWCORE_PORT must be between 1 and 65535")

    log_level = _get_env_str("FLOWCORE_LOG_LEVEL", "info").lower()

    return Settings(
        db_path=db_path,
        migrations_dir=migrations_dir,
        checkpoint_interval_s=checkpoint_interval_s,
        loop_max_attempts=loop_max_attempts,
        loop_rules_file=loop_rules_file,
        runner_command=runner_command,
        runner_workers=runner_workers,
        work_dir=work_dir,
        host=host,
        port=port,
        log_level=log_level,
    )
