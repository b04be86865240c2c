"""
taskwatch: handles for dispatched background work.

    from taskwatch import TaskClient, TaskRegistry

    handle = client.dispatch("math.add", [10, 20])
    handle.ready()          # False until a worker finishes it
    handle.get(timeout=5)   # 30, or the task's exception, or WaitTimeout
"""

from .core.errors import (
    ChannelUnavailable,
    DispatchError,
    InvalidOptions,
    NotRegistered,
    RemoteTaskError,
    ResultStoreUnavailable,
    Retry,
    TaskExpired,
    TaskNotFound,
    TaskRevokedError,
    TaskwatchError,
    WaitCancelled,
    WaitTimeout,
)
from .tasks.task_api import TaskClient
from .tasks.task_handle import TaskHandle
from .tasks.task_models import DispatchRequest, TaskRecord, TaskState
from .tasks.task_registry import TaskRegistry, default_registry, task

__all__ = [
    "ChannelUnavailable",
    "DispatchError",
    "DispatchRequest",
    "InvalidOptions",
    "NotRegistered",
    "RemoteTaskError",
    "ResultStoreUnavailable",
    "Retry",
    "TaskClient",
    "TaskExpired",
    "TaskHandle",
    "TaskNotFound",
    "TaskRecord",
    "TaskRegistry",
    "TaskRevokedError",
    "TaskState",
    "TaskwatchError",
    "WaitCancelled",
    "WaitTimeout",
    "default_registry",
    "task",
]
