# src/taskwatch/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the client and the worker.

The client depends on Protocols instead of concrete implementations.
This keeps the execution layer (local SQLite worker or Celery) swappable
and makes testing easier.
"""

from typing import Any, Iterable, Protocol


class DispatchChannel(Protocol):
    """
    Producer-side port: hands a request to the execution layer.

    send() only acknowledges acceptance; delivery and ordering are the
    channel's business.
    """

    def send(self, request: Any) -> None: ...
    def revoke(self, task_id: str) -> None: ...


class ResultStore(Protocol):
    """
    Keyed store of task outcomes.

    get_state/get_result raise TaskNotFound for unknown or expired ids and
    ResultStoreUnavailable when the store cannot be reached.
    set_state returns False when the transition is not allowed from the
    current state (the record is left untouched).
    """

    def create(self, record: Any, *, ttl_seconds: float | None = None) -> None: ...
    def get_state(self, task_id: str) -> Any: ...
    def get_result(self, task_id: str) -> Any: ...

    def set_state(
            self,
            task_id: str,
            state: Any,
            *,
            result: Any = None,
            failure: BaseException | None = None,
            traceback: str | None = None,
            retries: int | None = None,
    ) -> bool: ...

    def forget(self, task_id: str) -> None: ...
    def prune_expired(self, now_ts: float | None = None) -> int: ...


class TaskLookup(Protocol):
    """Anything that answers "is this task name runnable?" (TaskRegistry, celery app.tasks)."""

    def __contains__(self, name: object) -> bool: ...


class WorkQueue(Protocol):
    """Consumer side of the local queue, used by the worker loop."""

    def list_runnable(
            self,
            *,
            now_ts: float,
            queues: Iterable[str] | None = None,
            limit: int = 32,
    ) -> list[Any]: ...

    def try_claim(self, task_id: str) -> bool: ...
    def touch(self, task_id: str) -> None: ...
    def reclaim_stale(self, *, older_than_ts: float) -> list[str]: ...
    def requeue(self, task_id: str, *, eta: float, retries: int) -> None: ...
    def ack(self, task_id: str) -> None: ...
