# src/taskwatch/tasks/task_registry.py

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..core.errors import NotRegistered

logger = logging.getLogger(__name__)

TaskFunc = Callable[..., Any]


@dataclass(slots=True, frozen=True)
class TaskDefinition:
    """
    A callable the local worker is allowed to run.

    autoretry_for: exception types that trigger a retry without the task
    raising Retry itself (same idea as Celery's autoretry_for).
    """

    name: str
    func: TaskFunc
    max_retries: int = 0
    retry_delay_seconds: float = 1.0
    autoretry_for: tuple[type[BaseException], ...] = ()


class TaskRegistry:
    """Name -> TaskDefinition map. Dispatch checks names against it."""

    def __init__(self) -> None:
        self._tasks: dict[str, TaskDefinition] = {}
        self._lock = threading.Lock()

    def register(
        self,
        func: TaskFunc,
        *,
        name: str | None = None,
        max_retries: int = 0,
        retry_delay_seconds: float = 1.0,
        autoretry_for: tuple[type[BaseException], ...] = (),
    ) -> TaskDefinition:
        task_name = (name or f"{func.__module__}.{func.__qualname__}").strip()
        if not task_name:
            raise ValueError("task name is required")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        definition = TaskDefinition(
            name=task_name,
            func=func,
            max_retries=int(max_retries),
            retry_delay_seconds=max(0.0, float(retry_delay_seconds)),
            autoretry_for=tuple(autoretry_for),
        )

        with self._lock:
            existing = self._tasks.get(task_name)
            if existing is not None and existing.func is not func:
                raise ValueError(f"Task {task_name!r} is already registered with another function")
            self._tasks[task_name] = definition

        logger.debug("Registered task %s", task_name)
        return definition

    def task(
        self,
        name: str | None = None,
        *,
        max_retries: int = 0,
        retry_delay_seconds: float = 1.0,
        autoretry_for: tuple[type[BaseException], ...] = (),
    ) -> Callable[[TaskFunc], TaskFunc]:
        """Decorator form of register(); returns the function unchanged."""

        def decorator(func: TaskFunc) -> TaskFunc:
            self.register(
                func,
                name=name,
                max_retries=max_retries,
                retry_delay_seconds=retry_delay_seconds,
                autoretry_for=autoretry_for,
            )
            return func

        return decorator

    def get(self, name: str) -> TaskDefinition:
        with self._lock:
            definition = self._tasks.get(name)
        if definition is None:
            raise NotRegistered(name)
        return definition

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._tasks)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tasks

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)


default_registry = TaskRegistry()
task = default_registry.task
