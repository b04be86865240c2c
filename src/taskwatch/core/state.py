# src/taskwatch/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..tasks.task_api import TaskClient
from ..tasks.task_queue import TaskQueue
from ..tasks.task_registry import TaskRegistry
from .ports import DispatchChannel, ResultStore, TaskLookup


@dataclass
class AppState:
    """
    Everything a CLI command or an embedding application needs.

    queue is set only for the SQLite backend (the local worker consumes it).
    registry is the local TaskRegistry; with Celery, dispatch validation goes
    through `lookup` instead.
    """

    settings: Any
    channel: DispatchChannel
    results: ResultStore
    lookup: TaskLookup
    registry: TaskRegistry
    client: TaskClient
    queue: TaskQueue | None = None
    celery_app: Any = None
