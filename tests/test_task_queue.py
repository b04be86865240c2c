# tests/test_task_queue.py

from __future__ import annotations

import time
from pathlib import Path

import pytest

from taskwatch.core.errors import ChannelUnavailable, DispatchError
from taskwatch.tasks.task_models import DispatchRequest, MessageStatus
from taskwatch.tasks.task_queue import TaskQueue


def _request(task_id: str, *, queue: str = "celery", eta: float | None = None, args=(1, 2)) -> DispatchRequest:
    now = time.time()
    return DispatchRequest(
        task_id=task_id,
        task_name="math.add",
        args=tuple(args),
        kwargs={},
        queue=queue,
        created_at=now,
        eta=eta,
    )


def test_runnable_respects_eta_and_queue(tmp_path: Path) -> None:
    q = TaskQueue(tmp_path / "queue.sqlite3")
    now = time.time()
    q.send(_request("now"))
    q.send(_request("later", eta=now + 60))
    q.send(_request("other", queue="images"))

    ids = [m.task_id for m in q.list_runnable(now_ts=now, queues=["celery"])]
    assert ids == ["now"]

    ids_all = {m.task_id for m in q.list_runnable(now_ts=now + 120)}
    assert ids_all == {"now", "later", "other"}

    msg = q.get("now")
    assert msg is not None
    assert msg.args == [1, 2]
    assert msg.status == MessageStatus.QUEUED


def test_claim_is_exclusive(tmp_path: Path) -> None:
    q = TaskQueue(tmp_path / "queue.sqlite3")
    q.send(_request("t1"))

    assert q.try_claim("t1")
    assert not q.try_claim("t1")
    assert q.list_runnable(now_ts=time.time()) == []


def test_requeue_and_ack(tmp_path: Path) -> None:
    q = TaskQueue(tmp_path / "queue.sqlite3")
    q.send(_request("t1"))
    q.try_claim("t1")

    q.requeue("t1", eta=time.time() - 1, retries=1)
    runnable = q.list_runnable(now_ts=time.time())
    assert [m.task_id for m in runnable] == ["t1"]
    assert runnable[0].retries == 1

    q.try_claim("t1")
    q.ack("t1")
    msg = q.get("t1")
    assert msg is not None and msg.status == MessageStatus.DONE
    assert q.count_queued() == 0


def test_revoke_only_affects_queued_messages(tmp_path: Path) -> None:
    q = TaskQueue(tmp_path / "queue.sqlite3")
    q.send(_request("queued"))
    q.send(_request("claimed"))
    q.try_claim("claimed")

    q.revoke("queued")
    q.revoke("claimed")

    assert q.get("queued").status == MessageStatus.REVOKED
    assert q.get("claimed").status == MessageStatus.CLAIMED
    assert not q.try_claim("queued")


def test_unserializable_inputs_are_rejected(tmp_path: Path) -> None:
    q = TaskQueue(tmp_path / "queue.sqlite3")
    with pytest.raises(DispatchError):
        q.send(_request("bad", args=(object(),)))
    assert q.count_queued() == 0


def test_stale_claims_are_reclaimed(tmp_path: Path) -> None:
    q = TaskQueue(tmp_path / "queue.sqlite3")
    q.send(_request("a"))
    q.send(_request("b"))
    q.send(_request("queued"))
    q.try_claim("a")
    q.try_claim("b")

    assert q.reclaim_stale(older_than_ts=time.time() - 60) == []

    reclaimed = q.reclaim_stale(older_than_ts=time.time() + 1)
    assert sorted(reclaimed) == ["a", "b"]
    assert q.get("a").status == MessageStatus.QUEUED
    assert q.get("queued").status == MessageStatus.QUEUED
    assert q.try_claim("a")


def test_touch_keeps_a_claim_alive(tmp_path: Path) -> None:
    q = TaskQueue(tmp_path / "queue.sqlite3")
    q.send(_request("t1"))
    q.try_claim("t1")

    time.sleep(0.05)
    cutoff = time.time()
    q.touch("t1")

    assert q.reclaim_stale(older_than_ts=cutoff) == []
    assert q.get("t1").status == MessageStatus.CLAIMED


def test_corrupt_file_is_reported_as_unavailable(tmp_path: Path) -> None:
    db = tmp_path / "queue.sqlite3"
    q = TaskQueue(db)
    for p in tmp_path.glob("queue.sqlite3*"):
        p.unlink()
    db.write_bytes(b"this is not a sqlite database" * 100)

    with pytest.raises(ChannelUnavailable):
        q.count_queued()
