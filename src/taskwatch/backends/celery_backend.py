# src/taskwatch/backends/celery_backend.py

"""
Celery adapters for the dispatch channel and result store ports.

- CeleryDispatchChannel: send_task() / control.revoke()
- CeleryResultStore: reads and writes through app.backend
- CeleryTaskNames: dispatch validation against app.tasks (+ names that only
  the worker processes import)

Celery reports PENDING for ids it has never seen, and some backends (the
SQLAlchemy one) even hand back a full placeholder row for them. create()
therefore writes the task name through result_extended; a PENDING answer
without a name is an unknown or expired id.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

from celery import Celery, states
from celery.exceptions import BackendError
from celery.exceptions import TaskRevokedError as CeleryTaskRevokedError
from celery.result import AsyncResult
from kombu.exceptions import OperationalError

from ..core.errors import ChannelUnavailable, ResultStoreUnavailable, TaskNotFound
from ..tasks import task_codec
from ..tasks.task_models import DispatchRequest, TaskRecord, TaskState

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (OperationalError, BackendError, OSError)

_STATE_MAP: dict[str, TaskState] = {
    states.PENDING: TaskState.PENDING,
    states.RECEIVED: TaskState.PENDING,
    states.STARTED: TaskState.STARTED,
    states.RETRY: TaskState.RETRY,
    states.SUCCESS: TaskState.SUCCESS,
    states.FAILURE: TaskState.FAILURE,
    states.REVOKED: TaskState.REVOKED,
    states.REJECTED: TaskState.FAILURE,
    states.IGNORED: TaskState.FAILURE,
}


def from_celery_state(raw: str | None) -> TaskState:
    """Map a Celery state name; custom progress states count as STARTED."""
    if not raw:
        return TaskState.PENDING
    return _STATE_MAP.get(raw, TaskState.STARTED)


def _to_epoch(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    try:
        return datetime.fromisoformat(str(value)).timestamp()
    except ValueError:
        return None


def create_celery_app(settings) -> Celery:
    """Celery app configured from Settings (JSON only, UTC, STARTED tracked)."""
    app = Celery(
        settings.app_name,
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend,
    )
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_track_started=True,
        result_extended=True,
        result_expires=settings.result_ttl_seconds,
        task_default_queue=settings.default_queue,
    )
    return app


class CeleryTaskNames:
    """
    Names a Celery worker can run.

    A producer often does not import the task modules; `extra_names` lists
    tasks that exist only on the worker side.
    """

    def __init__(self, app: Celery, extra_names: Iterable[str] = ()) -> None:
        self._app = app
        self._extra = frozenset(extra_names)

    def __contains__(self, name: object) -> bool:
        return name in self._extra or name in self._app.tasks


class CeleryDispatchChannel:
    def __init__(self, app: Celery) -> None:
        self._app = app

    def send(self, request: DispatchRequest) -> None:
        expires = (
            datetime.fromtimestamp(request.expires_at, tz=timezone.utc)
            if request.expires_at is not None
            else None
        )
        try:
            self._app.send_task(
                request.task_name,
                args=list(request.args),
                kwargs=dict(request.kwargs),
                task_id=request.task_id,
                countdown=request.delay_seconds or None,
                expires=expires,
                queue=request.queue,
            )
        except OperationalError as exc:
            raise ChannelUnavailable(f"Broker refused task {request.task_name}: {exc}") from exc

        logger.debug("send_task %s id=%s queue=%s", request.task_name, request.task_id, request.queue)

    def revoke(self, task_id: str) -> None:
        try:
            self._app.control.revoke(task_id)
        except OperationalError as exc:
            raise ChannelUnavailable(f"Cannot broadcast revoke for {task_id}: {exc}") from exc


class CeleryResultStore:
    """
    ResultStore over a Celery result backend.

    Celery backends have no compare-and-set, so set_state() checks the
    transition table against a fresh read before writing. Celery's worker
    writes its own states directly; this store never fights it.

    The app must have result_extended=True: the task name that create()
    stores is what separates a dispatched task still waiting in PENDING from
    an id Celery knows nothing about.
    """

    def __init__(self, app: Celery) -> None:
        if not app.conf.result_extended:
            raise ValueError("CeleryResultStore needs a Celery app with result_extended=True")
        self._app = app

    def _meta(self, task_id: str) -> dict[str, Any]:
        try:
            meta = self._app.backend.get_task_meta(task_id)
        except _TRANSPORT_ERRORS as exc:
            raise ResultStoreUnavailable(f"Celery result backend failed: {exc}") from exc
        if not meta or "task_id" not in meta:
            raise TaskNotFound(task_id)
        if from_celery_state(meta.get("status")) == TaskState.PENDING and not meta.get("name"):
            raise TaskNotFound(task_id)
        return meta

    def _store(
        self,
        task_id: str,
        payload: Any,
        state: str,
        *,
        name: str,
        traceback: str | None = None,
        retries: int | None = None,
    ) -> None:
        # Stand-in for a worker request; with result_extended the backend keeps its task name.
        request = SimpleNamespace(task=name, args=None, kwargs=None, retries=retries)
        try:
            self._app.backend.store_result(task_id, payload, state, traceback=traceback, request=request)
        except _TRANSPORT_ERRORS as exc:
            raise ResultStoreUnavailable(f"Celery result backend failed: {exc}") from exc

    def create(self, record: TaskRecord, *, ttl_seconds: float | None = None) -> None:
        # Retention is the backend's result_expires; ttl_seconds is not per-record here.
        self._store(
            record.task_id,
            None,
            states.PENDING,
            name=record.task_name or record.task_id,
            retries=record.retries,
        )

    def get_state(self, task_id: str) -> TaskState:
        return from_celery_state(self._meta(task_id).get("status"))

    def get_result(self, task_id: str) -> TaskRecord:
        meta = self._meta(task_id)
        state = from_celery_state(meta.get("status"))
        raw = meta.get("result")

        result: Any = None
        failure: BaseException | None = None
        if isinstance(raw, BaseException):
            failure = raw
        elif state == TaskState.SUCCESS:
            result = raw

        return TaskRecord(
            task_id=task_id,
            state=state,
            task_name=meta.get("name"),
            result=result,
            failure=failure,
            traceback=meta.get("traceback"),
            retries=int(meta.get("retries") or 0),
            date_done=_to_epoch(meta.get("date_done")),
        )

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
        meta = self._meta(task_id)
        current = from_celery_state(meta.get("status"))
        if not current.can_move_to(state):
            logger.debug("Task %s: transition %s -> %s refused", task_id, current.value, state.value)
            return False

        payload: Any
        if state == TaskState.SUCCESS:
            task_codec.dumps(result)
            payload = result
        elif state == TaskState.REVOKED:
            payload = failure or CeleryTaskRevokedError("revoked")
        else:
            payload = failure

        self._store(
            task_id,
            payload,
            state.value,
            name=meta.get("name") or task_id,
            traceback=traceback,
            retries=meta.get("retries") if retries is None else retries,
        )
        return True

    def forget(self, task_id: str) -> None:
        try:
            AsyncResult(task_id, app=self._app).forget()
        except _TRANSPORT_ERRORS as exc:
            raise ResultStoreUnavailable(f"Celery result backend failed: {exc}") from exc

    def prune_expired(self, now_ts: float | None = None) -> int:
        """Delegates to backend.cleanup(); Celery does not report a count."""
        try:
            self._app.backend.cleanup()
        except NotImplementedError:
            logger.debug("Result backend has no cleanup(); relying on its own expiry")
        except _TRANSPORT_ERRORS as exc:
            raise ResultStoreUnavailable(f"Celery result backend failed: {exc}") from exc
        return 0
