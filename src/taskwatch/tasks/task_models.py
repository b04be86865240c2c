# src/taskwatch/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class TaskState(StrEnum):
    """
    Task lifecycle state, as seen by the result store.

    Values match Celery's state names so records written by either backend
    read the same.
    """

    PENDING = "PENDING"
    STARTED = "STARTED"
    RETRY = "RETRY"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    REVOKED = "REVOKED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def rank(self) -> int:
        """Position in the lifecycle order: PENDING/RETRY < STARTED < terminal."""
        return _RANK[self]

    def can_move_to(self, new: TaskState) -> bool:
        return new in ALLOWED_TRANSITIONS[self]

    @classmethod
    def from_db(cls, raw: str | None) -> TaskState:
        if not raw:
            raise ValueError("empty task state")
        return cls(raw.upper())


TERMINAL_STATES = frozenset({TaskState.SUCCESS, TaskState.FAILURE, TaskState.REVOKED})

ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.STARTED, TaskState.REVOKED}),
    TaskState.STARTED: frozenset(
        {TaskState.SUCCESS, TaskState.FAILURE, TaskState.RETRY, TaskState.REVOKED}
    ),
    TaskState.RETRY: frozenset({TaskState.STARTED, TaskState.REVOKED}),
    TaskState.SUCCESS: frozenset(),
    TaskState.FAILURE: frozenset(),
    TaskState.REVOKED: frozenset(),
}

_RANK = {
    TaskState.PENDING: 0,
    TaskState.RETRY: 0,
    TaskState.STARTED: 1,
    TaskState.SUCCESS: 2,
    TaskState.FAILURE: 2,
    TaskState.REVOKED: 2,
}


def predecessors(state: TaskState) -> list[TaskState]:
    """States from which `state` may be entered."""
    return [s for s, targets in ALLOWED_TRANSITIONS.items() if state in targets]


@dataclass(slots=True, frozen=True)
class DispatchRequest:
    """
    What the producer hands to the dispatch channel.

    Never mutated after submission. Timestamps are epoch seconds;
    eta is None when the task is eligible immediately.
    """

    task_id: str
    task_name: str
    args: tuple[Any, ...]
    kwargs: dict[str, Any]
    queue: str
    created_at: float
    eta: float | None = None
    expires_at: float | None = None

    @property
    def delay_seconds(self) -> float:
        if self.eta is None:
            return 0.0
        return max(0.0, self.eta - self.created_at)


class MessageStatus(StrEnum):
    """Delivery status of a message in the local queue (not the task state)."""

    QUEUED = "queued"
    CLAIMED = "claimed"
    REVOKED = "revoked"
    DONE = "done"


@dataclass(slots=True)
class QueuedMessage:
    task_id: str
    task_name: str
    args: list[Any]
    kwargs: dict[str, Any]
    queue: str
    status: MessageStatus
    created_at: float
    eta: float | None
    expires_at: float | None
    retries: int = 0


@dataclass(slots=True, frozen=True)
class TaskRecord:
    """One row of the result store."""

    task_id: str
    state: TaskState
    task_name: str | None = None
    result: Any = None
    failure: BaseException | None = None
    traceback: str | None = None
    retries: int = 0
    expires_at: float | None = None
    date_done: float | None = None
    updated_at: float = 0.0

    @property
    def ready(self) -> bool:
        return self.state.is_terminal
