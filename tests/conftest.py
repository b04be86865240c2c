# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from taskwatch.cli.bootstrap import create_initial_state
from taskwatch.core.state import AppState
from taskwatch.tasks.task_api import TaskClient
from taskwatch.tasks.task_registry import TaskRegistry

from .fakes import InMemoryResultStore, RecordingChannel, register_sample_tasks


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with bootstrap and the CLI.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="taskwatch-test",
        log_level="DEBUG",
        backend="sqlite",
        default_queue="celery",
        data_dir=tmp_path,
        results_db_path=tmp_path / "results.sqlite3",
        queue_db_path=tmp_path / "queue.sqlite3",
        result_ttl_seconds=3600,
        poll_interval_seconds=0.01,
        worker_interval_seconds=0.01,
        worker_batch_limit=16,
        worker_claim_timeout_seconds=300.0,
        celery_broker_url="memory://",
        celery_result_backend="cache+memory://",
        celery_task_names=[],
    )


@pytest.fixture()
def registry() -> TaskRegistry:
    reg = TaskRegistry()
    register_sample_tasks(reg)
    return reg


@pytest.fixture()
def state(settings: SimpleNamespace, registry: TaskRegistry) -> AppState:
    """
    AppState wired to real SQLite queue + result store under tmp_path.

    Their correctness is part of what we want to test, so no fakes here.
    """
    return create_initial_state(settings=settings, registry=registry)


@pytest.fixture()
def memory_store() -> InMemoryResultStore:
    return InMemoryResultStore()


@pytest.fixture()
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def client(channel: RecordingChannel, memory_store: InMemoryResultStore, registry: TaskRegistry) -> TaskClient:
    """Client over in-memory fakes: tests drive state changes by hand."""
    return TaskClient(channel, memory_store, registry, poll_interval_seconds=0.01)
