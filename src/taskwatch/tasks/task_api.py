# src/taskwatch/tasks/task_api.py

"""
Caller-facing surface: dispatch work, then poll, wait for or revoke it.

TaskClient wires one dispatch channel, one result store and one task lookup
together. Module-level helpers (poll_state, is_ready, ...) take a TaskHandle
and are what most callers use.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
import uuid
from collections import OrderedDict
from collections.abc import Mapping, Sequence
from typing import Any

from ..core.errors import (
    ChannelUnavailable,
    DispatchError,
    InvalidOptions,
    NotRegistered,
    RemoteTaskError,
    ResultEncodeError,
    TaskRevokedError,
    WaitCancelled,
    WaitTimeout,
)
from ..core.ports import DispatchChannel, ResultStore, TaskLookup
from . import task_codec
from .task_handle import TaskHandle
from .task_models import DispatchRequest, TaskRecord, TaskState

logger = logging.getLogger(__name__)

DISPATCH_OPTIONS = frozenset({"delay_seconds", "expires_after_seconds", "queue"})

_CACHE_MAX_ENTRIES = 10_000


def _task_id(ref: TaskHandle | str) -> str:
    return ref.id if isinstance(ref, TaskHandle) else str(ref)


def _number_option(options: Mapping[str, Any], key: str) -> float | None:
    raw = options.get(key)
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise InvalidOptions(f"{key} must be a number, got {type(raw).__name__}")
    value = float(raw)
    if not math.isfinite(value):
        raise InvalidOptions(f"{key} must be finite")
    return value


def parse_options(options: Mapping[str, Any] | None, *, default_queue: str) -> tuple[float, float | None, str]:
    """Validate dispatch options; returns (delay_seconds, expires_after_seconds, queue)."""
    options = dict(options or {})

    unknown = sorted(set(options) - DISPATCH_OPTIONS)
    if unknown:
        raise InvalidOptions(f"Unknown dispatch option(s): {', '.join(unknown)}")

    delay = _number_option(options, "delay_seconds")
    if delay is None:
        delay = 0.0
    if delay < 0:
        raise InvalidOptions("delay_seconds must be >= 0")

    expires = _number_option(options, "expires_after_seconds")
    if expires is not None:
        if expires <= 0:
            raise InvalidOptions("expires_after_seconds must be > 0")
        if expires <= delay:
            raise InvalidOptions("expires_after_seconds must be greater than delay_seconds")

    queue = options.get("queue", default_queue)
    if not isinstance(queue, str) or not queue.strip():
        raise InvalidOptions("queue must be a non-empty string")

    return delay, expires, queue.strip()


class TaskClient:
    """
    Dispatch + lookup client.

    Thread-safety:
    - state transitions belong to the execution layer; the client only reads,
      and writes REVOKED through the store's conditional update
    - the id -> last-known-state cache is guarded by a lock that is never
      held while waiting
    """

    def __init__(
        self,
        channel: DispatchChannel,
        results: ResultStore,
        registry: TaskLookup,
        *,
        default_queue: str = "celery",
        poll_interval_seconds: float = 0.5,
        result_ttl_seconds: float | None = None,
    ) -> None:
        self._channel = channel
        self._results = results
        self._registry = registry
        self._default_queue = default_queue
        self._poll_interval = max(0.001, float(poll_interval_seconds))
        self._result_ttl = result_ttl_seconds

        self._cache: OrderedDict[str, TaskState] = OrderedDict()
        self._cache_lock = threading.Lock()

    @property
    def results(self) -> ResultStore:
        return self._results

    # ---- advisory cache ----

    def _remember(self, task_id: str, state: TaskState) -> None:
        with self._cache_lock:
            prev = self._cache.get(task_id)
            if prev is not None and prev.is_terminal and state != prev:
                # The store is authoritative; the cache just refuses to go backwards.
                logger.warning(
                    "Result store reported %s for task %s after %s; keeping cached terminal state",
                    state.value,
                    task_id,
                    prev.value,
                )
                return
            self._cache[task_id] = state
            self._cache.move_to_end(task_id)
            while len(self._cache) > _CACHE_MAX_ENTRIES:
                self._cache.popitem(last=False)

    def last_known_state(self, ref: TaskHandle | str) -> TaskState | None:
        with self._cache_lock:
            return self._cache.get(_task_id(ref))

    # ---- dispatch ----

    def dispatch(
        self,
        name: str,
        args: Sequence[Any] = (),
        kwargs: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> TaskHandle:
        """
        Submit work for out-of-band execution and return its handle.

        Raises (synchronously, nothing is queued):
        - NotRegistered: the name is unknown to the execution layer
        - InvalidOptions: unknown option keys or bad values
        - DispatchError: inputs are not serializable
        - ChannelUnavailable: the channel refused the request
        """
        if not isinstance(name, str) or name not in self._registry:
            raise NotRegistered(str(name))
        if isinstance(args, (str, bytes)) or not isinstance(args, Sequence):
            raise DispatchError("args must be a sequence")
        if kwargs is not None and not isinstance(kwargs, Mapping):
            raise DispatchError("kwargs must be a mapping")

        delay, expires_after, queue = parse_options(options, default_queue=self._default_queue)

        args_t = tuple(args)
        kwargs_d = dict(kwargs or {})
        try:
            task_codec.dumps([list(args_t), kwargs_d])
        except ResultEncodeError as exc:
            raise DispatchError(f"Inputs for {name} are not serializable: {exc}") from exc

        now = time.time()
        request = DispatchRequest(
            task_id=str(uuid.uuid4()),
            task_name=name,
            args=args_t,
            kwargs=kwargs_d,
            queue=queue,
            created_at=now,
            eta=now + delay if delay > 0 else None,
            expires_at=now + expires_after if expires_after is not None else None,
        )

        # The PENDING record exists before the message does, so a fast worker
        # always finds something to move to STARTED.
        self._results.create(
            TaskRecord(
                task_id=request.task_id,
                state=TaskState.PENDING,
                task_name=name,
                expires_at=request.expires_at,
            ),
            ttl_seconds=self._result_ttl,
        )

        try:
            self._channel.send(request)
        except DispatchError:
            self._results.forget(request.task_id)
            raise
        except Exception as exc:
            self._results.forget(request.task_id)
            raise ChannelUnavailable(f"Dispatch of {name} failed: {exc}") from exc

        self._remember(request.task_id, TaskState.PENDING)
        logger.info(
            "Dispatched %s id=%s queue=%s delay=%ss expires_at=%s",
            name,
            request.task_id,
            queue,
            delay,
            request.expires_at,
        )
        return TaskHandle(request.task_id, self, task_name=name, expires_at=request.expires_at)

    def handle(self, task_id: str) -> TaskHandle:
        """Handle for an id obtained elsewhere (another process, a URL, a log line)."""
        return TaskHandle(task_id, self)

    # ---- lookup ----

    def poll_state(self, ref: TaskHandle | str) -> TaskState:
        task_id = _task_id(ref)
        state = self._results.get_state(task_id)
        self._remember(task_id, state)
        return state

    def is_ready(self, ref: TaskHandle | str) -> bool:
        return self.poll_state(ref).is_terminal

    def is_successful(self, ref: TaskHandle | str) -> bool:
        return self.poll_state(ref) == TaskState.SUCCESS

    def is_failed(self, ref: TaskHandle | str) -> bool:
        return self.poll_state(ref) == TaskState.FAILURE

    def fetch_record(self, ref: TaskHandle | str) -> TaskRecord:
        task_id = _task_id(ref)
        record = self._results.get_result(task_id)
        self._remember(task_id, record.state)
        return record

    def _resolve(self, task_id: str) -> Any:
        record = self.fetch_record(task_id)

        if record.state == TaskState.SUCCESS:
            return record.result

        if record.state == TaskState.FAILURE:
            cause = record.failure or RemoteTaskError("UnknownError", "task failed without a stored cause")
            if record.traceback:
                logger.debug("Task %s failed remotely:\n%s", task_id, record.traceback)
            raise cause

        if record.state == TaskState.REVOKED:
            raise TaskRevokedError(task_id) from record.failure

        raise RuntimeError(f"Task {task_id} is not ready (state={record.state.value})")

    def await_result(
        self,
        ref: TaskHandle | str,
        timeout: float | None = None,
        *,
        interval: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Any:
        """
        Block until the task reaches a terminal state.

        - SUCCESS: returns the stored value
        - FAILURE: raises the stored cause
        - REVOKED: raises TaskRevokedError
        - timeout elapsed first: raises WaitTimeout (the task may still finish later)
        - cancel event set: raises WaitCancelled (the task is not touched)

        timeout=None waits forever.
        """
        task_id = _task_id(ref)
        step = self._poll_interval if interval is None else max(0.001, float(interval))
        deadline = None if timeout is None else time.monotonic() + max(0.0, float(timeout))

        while True:
            if cancel is not None and cancel.is_set():
                raise WaitCancelled(task_id)

            state = self.poll_state(task_id)
            if state.is_terminal:
                return self._resolve(task_id)

            sleep_for = step
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise WaitTimeout(task_id, float(timeout or 0.0), state.value)
                sleep_for = min(step, remaining)

            if cancel is not None:
                if cancel.wait(sleep_for):
                    raise WaitCancelled(task_id)
            else:
                time.sleep(sleep_for)

    async def await_result_async(
        self,
        ref: TaskHandle | str,
        timeout: float | None = None,
        *,
        interval: float | None = None,
    ) -> Any:
        """
        asyncio variant of await_result().

        Cancelling the awaiting task raises CancelledError in the caller and
        leaves the dispatched work alone.
        """
        task_id = _task_id(ref)
        step = self._poll_interval if interval is None else max(0.001, float(interval))
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + max(0.0, float(timeout))

        while True:
            state = self.poll_state(task_id)
            if state.is_terminal:
                return self._resolve(task_id)

            sleep_for = step
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise WaitTimeout(task_id, float(timeout or 0.0), state.value)
                sleep_for = min(step, remaining)

            await asyncio.sleep(sleep_for)

    # ---- control ----

    def revoke(self, ref: TaskHandle | str) -> bool:
        """
        Ask for the task to be cancelled.

        Returns True if this call moved the record to REVOKED, False if the
        task had already reached a terminal state. Raises TaskNotFound for
        unknown ids.
        """
        task_id = _task_id(ref)
        current = self.poll_state(task_id)
        if current.is_terminal:
            logger.info("Revoke ignored: task %s already %s", task_id, current.value)
            return False

        revoked = self._results.set_state(task_id, TaskState.REVOKED)
        self._channel.revoke(task_id)

        if revoked:
            self._remember(task_id, TaskState.REVOKED)
            logger.info("Task %s revoked (was %s)", task_id, current.value)
        else:
            logger.info("Revoke of task %s lost the race; it reached a terminal state first", task_id)
        return revoked

    def forget(self, ref: TaskHandle | str) -> None:
        task_id = _task_id(ref)
        self._results.forget(task_id)
        with self._cache_lock:
            self._cache.pop(task_id, None)


# ---- helpers over handles ----


def dispatch(
    client: TaskClient,
    name: str,
    args: Sequence[Any] = (),
    kwargs: Mapping[str, Any] | None = None,
    options: Mapping[str, Any] | None = None,
) -> TaskHandle:
    return client.dispatch(name, args, kwargs, options)


def poll_state(handle: TaskHandle) -> TaskState:
    return handle.state


def is_ready(handle: TaskHandle) -> bool:
    return handle.ready()


def is_successful(handle: TaskHandle) -> bool:
    return handle.successful()


def is_failed(handle: TaskHandle) -> bool:
    return handle.failed()


def await_result(
    handle: TaskHandle,
    timeout: float | None = None,
    *,
    cancel: threading.Event | None = None,
) -> Any:
    return handle.get(timeout, cancel=cancel)


def revoke(handle: TaskHandle) -> bool:
    return handle.revoke()
