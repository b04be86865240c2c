# tests/fakes.py

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any

from taskwatch.core.errors import ChannelUnavailable, ResultStoreUnavailable, Retry, TaskNotFound
from taskwatch.tasks import task_codec
from taskwatch.tasks.task_models import DispatchRequest, TaskRecord, TaskState, predecessors
from taskwatch.tasks.task_registry import TaskRegistry


class BoomError(Exception):
    """Task-defined error type; must come back from the store as itself."""


def add(x, y):
    return x + y


def boom(message="boom"):
    raise BoomError(message)


def fail_value(message="bad input"):
    raise ValueError(message)


def unserializable():
    return object()


async def async_double(x):
    await asyncio.sleep(0)
    return x * 2


def slow(seconds=0.3):
    time.sleep(seconds)
    return seconds


async def async_sleep(seconds=10.0):
    await asyncio.sleep(seconds)
    return seconds


class Flaky:
    """Fails `failures` times, then returns "ok"."""

    def __init__(self, failures: int, *, via_retry: bool = True) -> None:
        self.failures = failures
        self.calls = 0
        self.via_retry = via_retry

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            err = ConnectionError(f"attempt {self.calls} failed")
            if self.via_retry:
                raise Retry(countdown=0, exc=err)
            raise err
        return "ok"


def register_sample_tasks(reg: TaskRegistry) -> None:
    reg.register(add, name="math.add")
    reg.register(boom, name="demo.boom")
    reg.register(fail_value, name="demo.fail_value")
    reg.register(unserializable, name="demo.unserializable")
    reg.register(async_double, name="math.async_double")
    reg.register(slow, name="demo.slow")
    reg.register(async_sleep, name="demo.async_sleep")


class InMemoryResultStore:
    """
    Dict-backed ResultStore for client tests.

    Enforces the same transition table as the SQLite store. `unavailable`
    simulates an outage; `reads` counts get_state calls.
    """

    def __init__(self, *, ttl_seconds: float = 3600.0) -> None:
        self.records: dict[str, TaskRecord] = {}
        self.retain_until: dict[str, float] = {}
        self.ttl = ttl_seconds
        self.unavailable = False
        self.reads = 0
        self._lock = threading.Lock()

    def _check(self) -> None:
        if self.unavailable:
            raise ResultStoreUnavailable("store is down")

    def _live(self, task_id: str) -> TaskRecord:
        rec = self.records.get(task_id)
        if rec is None or self.retain_until.get(task_id, 0.0) <= time.time():
            raise TaskNotFound(task_id)
        return rec

    def create(self, record: TaskRecord, *, ttl_seconds: float | None = None) -> None:
        self._check()
        with self._lock:
            if record.task_id in self.records:
                raise ValueError(f"Task id {record.task_id} already exists")
            self.records[record.task_id] = record
            self.retain_until[record.task_id] = time.time() + (self.ttl if ttl_seconds is None else ttl_seconds)

    def get_state(self, task_id: str) -> TaskState:
        self._check()
        with self._lock:
            self.reads += 1
            return self._live(task_id).state

    def get_result(self, task_id: str) -> TaskRecord:
        self._check()
        with self._lock:
            return self._live(task_id)

    def set_state(
        self,
        task_id: str,
        state: TaskState,
        *,
        result: Any = None,
        failure: BaseException | None = None,
        traceback: str | None = None,
        retries: int | None = None,
    ) -> bool:
        self._check()
        if state == TaskState.SUCCESS:
            task_codec.dumps(result)
        with self._lock:
            rec = self.records.get(task_id)
            if rec is None or rec.state not in predecessors(state):
                return False
            self.records[task_id] = replace(
                rec,
                state=state,
                result=result if state == TaskState.SUCCESS else rec.result,
                failure=failure if failure is not None else rec.failure,
                traceback=traceback if traceback is not None else rec.traceback,
                retries=rec.retries if retries is None else retries,
                updated_at=time.time(),
            )
            return True

    def forget(self, task_id: str) -> None:
        self._check()
        with self._lock:
            self.records.pop(task_id, None)
            self.retain_until.pop(task_id, None)

    def prune_expired(self, now_ts: float | None = None) -> int:
        now = time.time() if now_ts is None else now_ts
        with self._lock:
            dead = [k for k, until in self.retain_until.items() if until <= now]
            for k in dead:
                self.records.pop(k, None)
                self.retain_until.pop(k, None)
            return len(dead)


@dataclass(slots=True)
class RecordingChannel:
    """
    Fake DispatchChannel: keeps what was sent and revoked.
    """

    sent: list[DispatchRequest] = field(default_factory=list)
    revoked: list[str] = field(default_factory=list)
    fail: bool = False

    def send(self, request: DispatchRequest) -> None:
        if self.fail:
            raise ChannelUnavailable("broker is down")
        self.sent.append(request)

    def revoke(self, task_id: str) -> None:
        self.revoked.append(task_id)
