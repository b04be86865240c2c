# src/taskwatch/tasks/task_handle.py

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any

from .task_models import TaskRecord, TaskState

if TYPE_CHECKING:
    from .task_api import TaskClient


class TaskHandle:
    """
    Client-side reference to one dispatched unit of work.

    The handle never executes anything and owns no state beyond its
    identifier: every question goes to the result store through the client.
    Any number of handles may point at the same identifier, from any thread.
    """

    __slots__ = ("_id", "_client", "task_name", "expires_at")

    def __init__(
        self,
        task_id: str,
        client: TaskClient,
        *,
        task_name: str | None = None,
        expires_at: float | None = None,
    ) -> None:
        self._id = str(task_id)
        self._client = client
        self.task_name = task_name
        self.expires_at = expires_at

    @property
    def id(self) -> str:
        return self._id

    @property
    def state(self) -> TaskState:
        """Current state from the result store (one read, non-blocking)."""
        return self._client.poll_state(self._id)

    @property
    def last_known_state(self) -> TaskState | None:
        """Last state this process saw for the id. Advisory, no I/O."""
        return self._client.last_known_state(self._id)

    def ready(self) -> bool:
        return self._client.is_ready(self._id)

    def successful(self) -> bool:
        return self._client.is_successful(self._id)

    def failed(self) -> bool:
        return self._client.is_failed(self._id)

    def info(self) -> TaskRecord:
        return self._client.fetch_record(self._id)

    @property
    def traceback(self) -> str | None:
        return self.info().traceback

    def get(
        self,
        timeout: float | None = None,
        *,
        interval: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Any:
        """Block until the task is done; see TaskClient.await_result."""
        return self._client.await_result(self._id, timeout, interval=interval, cancel=cancel)

    async def wait(self, timeout: float | None = None, *, interval: float | None = None) -> Any:
        """Async variant of get(); cancel the awaiting asyncio task to abandon the wait."""
        return await self._client.await_result_async(self._id, timeout, interval=interval)

    def revoke(self) -> bool:
        return self._client.revoke(self._id)

    def forget(self) -> None:
        self._client.forget(self._id)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TaskHandle):
            return other._id == self._id
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._id)

    def __repr__(self) -> str:
        return f"<TaskHandle {self._id} name={self.task_name}>"
