# src/taskwatch/core/errors.py

"""
Exception hierarchy.

Four families that callers must be able to tell apart:
- dispatch-time: the request was rejected before anything was queued
- execution-time: the work itself failed (stored, re-raised on result retrieval)
- availability: the result store or channel could not answer
- wait: the caller's wait ended without a terminal state
"""

from __future__ import annotations


class TaskwatchError(Exception):
    """Base class for all errors raised by taskwatch itself."""


# ---- dispatch-time ----


class DispatchError(TaskwatchError):
    """The dispatch request was rejected synchronously."""


class NotRegistered(DispatchError):
    """No task with this name is registered with the execution layer."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Task {self.name!r} is not registered"


class InvalidOptions(DispatchError):
    """Unknown option key or invalid option value."""


class ChannelUnavailable(DispatchError):
    """The dispatch channel refused or could not accept the request."""


# ---- execution-time ----


class TaskRevokedError(TaskwatchError):
    """The task was revoked; it has no result."""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task {self.task_id} was revoked"


class TaskExpired(TaskwatchError):
    """The task was not started before its expiration time."""


class WorkerLost(TaskwatchError):
    """The worker running the task stopped or stalled before recording an outcome."""


class ResultEncodeError(TaskwatchError):
    """The task returned a value that cannot be stored."""


class RemoteTaskError(TaskwatchError):
    """
    Stand-in for a stored failure whose exception type cannot be rebuilt
    in this process (module not importable, or not an exception class).
    """

    def __init__(self, exc_type: str, message: str = "") -> None:
        super().__init__(exc_type, message)
        self.exc_type = exc_type
        self.message = message

    def __str__(self) -> str:
        return f"{self.exc_type}: {self.message}" if self.message else self.exc_type


class Retry(TaskwatchError):
    """
    Raised inside a task body to ask the worker for another attempt.

    countdown: seconds before the task is eligible again (None -> task default).
    exc: the original failure, stored as the cause while in RETRY and used as
         the final cause once retries are exhausted.
    """

    def __init__(self, countdown: float | None = None, exc: BaseException | None = None) -> None:
        super().__init__(f"Retry in {countdown}s" if countdown is not None else "Retry")
        self.countdown = countdown
        self.exc = exc


# ---- availability ----


class ResultStoreUnavailable(TaskwatchError):
    """The result store could not be reached; the task state is unknown."""


class TaskNotFound(TaskwatchError):
    """
    The identifier is unknown to the result store: never dispatched,
    or its record expired and was pruned.
    """

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task {self.task_id} is unknown or its result has expired"


# ---- wait ----


class WaitTimeout(TaskwatchError, TimeoutError):
    """The wait ended before the task reached a terminal state."""

    def __init__(self, task_id: str, timeout: float, last_state: str | None = None) -> None:
        super().__init__(f"Task {task_id} not ready after {timeout}s (last state: {last_state})")
        self.task_id = task_id
        self.timeout = timeout
        self.last_state = last_state


class WaitCancelled(TaskwatchError):
    """The caller abandoned the wait; the task itself is unaffected."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Wait for task {task_id} was cancelled")
        self.task_id = task_id
