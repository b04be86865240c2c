# src/taskwatch/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole process.
- No broker or backend connection is made at import time.
- Malformed values fall back to defaults instead of failing startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TASKWATCH"

BACKENDS = ("sqlite", "celery")

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Execution layer ----
    backend: str
    default_queue: str

    # ---- Local data paths ----
    data_dir: Path
    results_db_path: Path
    queue_db_path: Path

    # ---- Result retention / polling ----
    result_ttl_seconds: int
    poll_interval_seconds: float

    # ---- Local worker ----
    worker_interval_seconds: float
    worker_batch_limit: int
    worker_claim_timeout_seconds: float

    # ---- Celery ----
    celery_broker_url: str
    celery_result_backend: str
    celery_task_names: list[str]

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskwatch") or "taskwatch"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        backend = _env(_k("BACKEND"), "sqlite").strip().lower()
        if backend not in BACKENDS:
            backend = "sqlite"
        # Celery routes to a queue named "celery" unless told otherwise.
        default_queue = _env(_k("DEFAULT_QUEUE"), "celery").strip() or "celery"

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskwatch"))
        results_db_path = _env_path(_k("RESULTS_DB_PATH"), data_dir / "results.sqlite3")
        queue_db_path = _env_path(_k("QUEUE_DB_PATH"), data_dir / "queue.sqlite3")

        result_ttl_seconds = max(1, _env_int(_k("RESULT_TTL_SECONDS"), 86400))
        poll_interval_seconds = max(0.01, _env_float(_k("POLL_INTERVAL_SECONDS"), 0.5))

        worker_interval_seconds = max(0.01, _env_float(_k("WORKER_INTERVAL_SECONDS"), 1.0))
        worker_batch_limit = max(1, _env_int(_k("WORKER_BATCH_LIMIT"), 32))
        # A claimed message with no heartbeat for this long belongs to a dead worker.
        worker_claim_timeout_seconds = max(1.0, _env_float(_k("WORKER_CLAIM_TIMEOUT_SECONDS"), 300.0))

        celery_broker_url = (
            _first_env(_k("CELERY_BROKER_URL"), "CELERY_BROKER_URL", default="redis://localhost:6379/0")
            or ""
        ).strip()
        celery_result_backend = (
            _first_env(_k("CELERY_RESULT_BACKEND"), "CELERY_RESULT_BACKEND", default="redis://localhost:6379/1")
            or ""
        ).strip()

        celery_task_names = _env_list(_k("CELERY_TASK_NAMES"), [])

        return Settings(
            app_name=app_name,
            log_level=log_level,
            backend=backend,
            default_queue=default_queue,
            data_dir=data_dir,
            results_db_path=results_db_path,
            queue_db_path=queue_db_path,
            result_ttl_seconds=result_ttl_seconds,
            poll_interval_seconds=poll_interval_seconds,
            worker_interval_seconds=worker_interval_seconds,
            worker_batch_limit=worker_batch_limit,
            worker_claim_timeout_seconds=worker_claim_timeout_seconds,
            celery_broker_url=celery_broker_url,
            celery_result_backend=celery_result_backend,
            celery_task_names=celery_task_names,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
