# src/taskwatch/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the backend (SQLite queue + store, or Celery) into AppState,
- imports task modules so their @task decorators register.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Iterable

from ..config import get_settings
from ..core.state import AppState
from ..tasks.task_api import TaskClient
from ..tasks.task_queue import TaskQueue
from ..tasks.task_registry import TaskRegistry, default_registry
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.results_db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.queue_db_path.parent.mkdir(parents=True, exist_ok=True)


def import_task_modules(modules: Iterable[str]) -> list[str]:
    """Import modules for their registration side effects; returns the names imported."""
    imported: list[str] = []
    for name in modules:
        name = name.strip()
        if not name:
            continue
        importlib.import_module(name)
        imported.append(name)
        logger.info("Imported task module %s", name)
    return imported


def create_initial_state(*, settings=None, registry: TaskRegistry | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()
    if registry is None:
        registry = default_registry

    if getattr(settings, "backend", "sqlite") == "celery":
        return _create_celery_state(settings, registry)

    _ensure_local_dirs(settings)

    queue = TaskQueue(settings.queue_db_path)
    results = TaskStore(settings.results_db_path, result_ttl_seconds=settings.result_ttl_seconds)
    client = TaskClient(
        queue,
        results,
        registry,
        default_queue=settings.default_queue,
        poll_interval_seconds=settings.poll_interval_seconds,
        result_ttl_seconds=settings.result_ttl_seconds,
    )
    return AppState(
        settings=settings,
        channel=queue,
        results=results,
        lookup=registry,
        registry=registry,
        client=client,
        queue=queue,
    )


def _create_celery_state(settings, registry: TaskRegistry) -> AppState:
    from ..backends.celery_backend import (
        CeleryDispatchChannel,
        CeleryResultStore,
        CeleryTaskNames,
        create_celery_app,
    )

    app = create_celery_app(settings)
    channel = CeleryDispatchChannel(app)
    results = CeleryResultStore(app)
    lookup = CeleryTaskNames(app, extra_names=getattr(settings, "celery_task_names", ()))
    client = TaskClient(
        channel,
        results,
        lookup,
        default_queue=settings.default_queue,
        poll_interval_seconds=settings.poll_interval_seconds,
    )
    logger.info("Using Celery backend broker=%s", settings.celery_broker_url)
    return AppState(
        settings=settings,
        channel=channel,
        results=results,
        lookup=lookup,
        registry=registry,
        client=client,
        celery_app=app,
    )
