# tests/test_celery_backend.py

from __future__ import annotations

import time
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from celery import Celery
from celery.exceptions import TaskRevokedError as CeleryTaskRevokedError
from kombu.exceptions import OperationalError

from taskwatch.backends.celery_backend import (
    CeleryDispatchChannel,
    CeleryResultStore,
    CeleryTaskNames,
    create_celery_app,
    from_celery_state,
)
from taskwatch.core.errors import (
    ChannelUnavailable,
    ResultEncodeError,
    ResultStoreUnavailable,
    TaskNotFound,
)
from taskwatch.tasks.task_models import DispatchRequest, TaskRecord, TaskState


@pytest.fixture()
def app(settings: SimpleNamespace):
    # memory:// broker + in-process cache backend: no network.
    yield create_celery_app(settings)
    # The cache+memory:// backend is process-global; isolate tests from each other.
    from celery.backends.cache import _DUMMY_CLIENT_CACHE

    _DUMMY_CLIENT_CACHE.clear()


@pytest.fixture()
def store(app) -> CeleryResultStore:
    return CeleryResultStore(app)


def _pending(store: CeleryResultStore, task_id: str = "c1") -> None:
    store.create(TaskRecord(task_id=task_id, state=TaskState.PENDING, task_name="math.add"))


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, TaskState.PENDING),
        ("PENDING", TaskState.PENDING),
        ("RECEIVED", TaskState.PENDING),
        ("STARTED", TaskState.STARTED),
        ("RETRY", TaskState.RETRY),
        ("SUCCESS", TaskState.SUCCESS),
        ("FAILURE", TaskState.FAILURE),
        ("REVOKED", TaskState.REVOKED),
        ("REJECTED", TaskState.FAILURE),
        ("PROGRESS", TaskState.STARTED),
    ],
)
def test_celery_states_map_onto_task_states(raw, expected) -> None:
    assert from_celery_state(raw) == expected


def test_app_is_configured_for_json_and_started_tracking(app) -> None:
    conf = app.conf
    assert conf.task_serializer == "json"
    assert conf.result_serializer == "json"
    assert conf.accept_content == ["json"]
    assert conf.task_track_started is True
    assert conf.result_expires == 3600
    assert conf.task_default_queue == "celery"


def test_channel_sends_with_countdown_and_expiry() -> None:
    app = MagicMock()
    channel = CeleryDispatchChannel(app)
    now = time.time()
    req = DispatchRequest(
        task_id="id-1",
        task_name="math.add",
        args=(10, 20),
        kwargs={"z": 1},
        queue="math",
        created_at=now,
        eta=now + 5,
        expires_at=now + 30,
    )

    channel.send(req)

    app.send_task.assert_called_once()
    args, kwargs = app.send_task.call_args
    assert args == ("math.add",)
    assert kwargs["args"] == [10, 20]
    assert kwargs["kwargs"] == {"z": 1}
    assert kwargs["task_id"] == "id-1"
    assert kwargs["queue"] == "math"
    assert kwargs["countdown"] == pytest.approx(5, abs=0.01)
    assert kwargs["expires"] == datetime.fromtimestamp(now + 30, tz=timezone.utc)


def test_channel_without_delay_sends_no_countdown() -> None:
    app = MagicMock()
    CeleryDispatchChannel(app).send(
        DispatchRequest(task_id="id-2", task_name="math.add", args=(), kwargs={}, queue="celery", created_at=time.time())
    )
    _, kwargs = app.send_task.call_args
    assert kwargs["countdown"] is None
    assert kwargs["expires"] is None


def test_broker_errors_become_channel_unavailable() -> None:
    app = MagicMock()
    app.send_task.side_effect = OperationalError("connection refused")
    app.control.revoke.side_effect = OperationalError("connection refused")
    channel = CeleryDispatchChannel(app)
    req = DispatchRequest(task_id="id-3", task_name="math.add", args=(), kwargs={}, queue="celery", created_at=time.time())

    with pytest.raises(ChannelUnavailable):
        channel.send(req)
    with pytest.raises(ChannelUnavailable):
        channel.revoke("id-3")


def test_revoke_is_broadcast() -> None:
    app = MagicMock()
    CeleryDispatchChannel(app).revoke("id-4")
    app.control.revoke.assert_called_once_with("id-4")


def test_task_names_include_worker_only_names(app) -> None:
    @app.task(name="local.echo")
    def echo(x):
        return x

    names = CeleryTaskNames(app, extra_names=["remote.resize"])
    assert "local.echo" in names
    assert "remote.resize" in names
    assert "nope.missing" not in names


def test_store_create_then_read_pending(store: CeleryResultStore) -> None:
    _pending(store)
    assert store.get_state("c1") == TaskState.PENDING
    assert not store.get_result("c1").ready


def test_store_unknown_id_is_not_pending(store: CeleryResultStore) -> None:
    with pytest.raises(TaskNotFound):
        store.get_state("never-dispatched")


def test_store_success_path(store: CeleryResultStore) -> None:
    _pending(store)
    assert store.set_state("c1", TaskState.STARTED)
    assert store.set_state("c1", TaskState.SUCCESS, result={"sum": 30})

    rec = store.get_result("c1")
    assert rec.state == TaskState.SUCCESS
    assert rec.result == {"sum": 30}
    assert rec.failure is None


def test_store_failure_keeps_exception_type(store: CeleryResultStore) -> None:
    _pending(store)
    store.set_state("c1", TaskState.STARTED)
    store.set_state("c1", TaskState.FAILURE, failure=ValueError("bad input"))

    rec = store.get_result("c1")
    assert rec.state == TaskState.FAILURE
    assert isinstance(rec.failure, ValueError)


def test_store_refuses_transitions_outside_lifecycle(store: CeleryResultStore) -> None:
    _pending(store)
    assert not store.set_state("c1", TaskState.SUCCESS, result=1)

    assert store.set_state("c1", TaskState.REVOKED)
    assert not store.set_state("c1", TaskState.STARTED)

    rec = store.get_result("c1")
    assert rec.state == TaskState.REVOKED
    assert isinstance(rec.failure, CeleryTaskRevokedError)


def test_store_rejects_unserializable_result(store: CeleryResultStore) -> None:
    _pending(store)
    store.set_state("c1", TaskState.STARTED)
    with pytest.raises(ResultEncodeError):
        store.set_state("c1", TaskState.SUCCESS, result=object())
    assert store.get_state("c1") == TaskState.STARTED


def test_store_prune_delegates_to_backend(store: CeleryResultStore) -> None:
    assert store.prune_expired() == 0


def test_backend_errors_become_store_unavailable() -> None:
    app = MagicMock()
    app.backend.get_task_meta.side_effect = OperationalError("redis down")
    store = CeleryResultStore(app)

    with pytest.raises(ResultStoreUnavailable):
        store.get_state("c1")


def test_store_needs_extended_results() -> None:
    plain = Celery("plain", broker="memory://", backend="cache+memory://")
    with pytest.raises(ValueError, match="result_extended"):
        CeleryResultStore(plain)


@pytest.fixture()
def db_store(settings: SimpleNamespace, tmp_path) -> CeleryResultStore:
    # The SQLAlchemy backend returns a full PENDING row for ids it never stored.
    settings.celery_result_backend = f"db+sqlite:///{tmp_path / 'celery-results.db'}"
    return CeleryResultStore(create_celery_app(settings))


def test_database_backend_unknown_id_is_not_pending(db_store: CeleryResultStore) -> None:
    with pytest.raises(TaskNotFound):
        db_store.get_state("never-dispatched")
    with pytest.raises(TaskNotFound):
        db_store.get_result("never-dispatched")
    with pytest.raises(TaskNotFound):
        db_store.set_state("never-dispatched", TaskState.STARTED)


def test_database_backend_lifecycle(db_store: CeleryResultStore) -> None:
    _pending(db_store)
    assert db_store.get_state("c1") == TaskState.PENDING

    assert db_store.set_state("c1", TaskState.STARTED)
    assert db_store.set_state("c1", TaskState.SUCCESS, result={"sum": 30})

    rec = db_store.get_result("c1")
    assert rec.state == TaskState.SUCCESS
    assert rec.result == {"sum": 30}
    assert rec.task_name == "math.add"
