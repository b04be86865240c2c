# src/taskwatch/tasks/task_queue.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from pathlib import Path

from ..core.errors import ChannelUnavailable, DispatchError, ResultEncodeError
from . import task_codec
from .task_models import DispatchRequest, MessageStatus, QueuedMessage

logger = logging.getLogger(__name__)


class TaskQueue:
    """
    SQLite-backed local queue.

    Producer side (DispatchChannel): send(), revoke().
    Worker side (WorkQueue): list_runnable(), try_claim(), requeue(), ack().

    A message is runnable when it is queued and its eta is NULL ("any time")
    or in the past. Claiming is a conditional UPDATE, so two workers polling
    the same file never run the same message twice.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "queue.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("TaskQueue ready db=%s queued=%s", self._db_path, self.count_queued())

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_conn()
        except sqlite3.Error as exc:
            raise ChannelUnavailable(f"Cannot open task queue {self._db_path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as exc:
            raise ChannelUnavailable(f"Task queue {self._db_path} failed: {exc}") from exc
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS task_messages (
                    task_id TEXT PRIMARY KEY,
                    task_name TEXT NOT NULL,
                    args TEXT NOT NULL DEFAULT '[]',
                    kwargs TEXT NOT NULL DEFAULT '{}',
                    queue TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'queued',
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    eta REAL,
                    expires_at REAL,
                    retries INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_task_messages_runnable "
                "ON task_messages(status, queue, eta)"
            )
            conn.commit()

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> QueuedMessage:
        args = task_codec.loads(row["args"])
        kwargs = task_codec.loads(row["kwargs"])
        return QueuedMessage(
            task_id=str(row["task_id"]),
            task_name=str(row["task_name"]),
            args=args if isinstance(args, list) else [],
            kwargs=kwargs if isinstance(kwargs, dict) else {},
            queue=str(row["queue"]),
            status=MessageStatus(row["status"]),
            created_at=float(row["created_at"]),
            eta=float(row["eta"]) if row["eta"] is not None else None,
            expires_at=float(row["expires_at"]) if row["expires_at"] is not None else None,
            retries=int(row["retries"] or 0),
        )

    # ---- producer side ----

    def send(self, request: DispatchRequest) -> None:
        try:
            args_str = task_codec.dumps(list(request.args))
            kwargs_str = task_codec.dumps(dict(request.kwargs))
        except ResultEncodeError as exc:
            raise DispatchError(f"Task {request.task_name} inputs are not serializable: {exc}") from exc

        now = time.time()
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO task_messages(
                    task_id, task_name, args, kwargs, queue, status,
                    created_at, updated_at, eta, expires_at
                )
                VALUES (?, ?, ?, ?, ?, 'queued', ?, ?, ?, ?)
                """,
                (
                    request.task_id,
                    request.task_name,
                    args_str,
                    kwargs_str,
                    request.queue,
                    request.created_at,
                    now,
                    request.eta,
                    request.expires_at,
                ),
            )
            conn.commit()

        logger.debug(
            "Message queued id=%s name=%s queue=%s eta=%s",
            request.task_id,
            request.task_name,
            request.queue,
            request.eta,
        )

    def revoke(self, task_id: str) -> None:
        """Stop a queued message from being delivered. Claimed messages are left alone."""
        with self._session() as conn:
            cur = conn.cursor()
            cur.execute(
                "UPDATE task_messages SET status = 'revoked', updated_at = ? "
                "WHERE task_id = ? AND status = 'queued'",
                (time.time(), str(task_id)),
            )
            conn.commit()
            if cur.rowcount:
                logger.info("Message %s revoked", task_id)

    # ---- worker side ----

    def count_queued(self) -> int:
        with self._session() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM task_messages WHERE status = 'queued'")
            (n,) = cur.fetchone()
            return int(n)

    def get(self, task_id: str) -> QueuedMessage | None:
        with self._session() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM task_messages WHERE task_id = ?", (str(task_id),))
            row = cur.fetchone()
            return self._row_to_message(row) if row else None

    def list_runnable(
        self,
        *,
        now_ts: float,
        queues: Iterable[str] | None = None,
        limit: int = 32,
    ) -> list[QueuedMessage]:
        """
        Return messages that are ready to be executed.

        A message is runnable if it is queued and:
        - eta IS NULL (meaning "any time"), OR
        - eta <= now_ts
        """
        sql = (
            "SELECT * FROM task_messages "
            "WHERE status = 'queued' AND (eta IS NULL OR eta <= ?)"
        )
        params: list[object] = [float(now_ts)]

        queue_list = list(queues or [])
        if queue_list:
            sql += f" AND queue IN ({','.join('?' for _ in queue_list)})"
            params.extend(queue_list)

        sql += " ORDER BY COALESCE(eta, created_at) ASC, created_at ASC LIMIT ?"
        params.append(int(limit))

        with self._session() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            return [self._row_to_message(r) for r in cur.fetchall()]

    def try_claim(self, task_id: str) -> bool:
        """
        Atomically transitions queued -> claimed.

        Returns True if the row was claimed by this caller.
        """
        with self._session() as conn:
            cur = conn.cursor()
            cur.execute(
                "UPDATE task_messages SET status = 'claimed', updated_at = ? "
                "WHERE task_id = ? AND status = 'queued'",
                (time.time(), str(task_id)),
            )
            conn.commit()
            return cur.rowcount == 1

    def touch(self, task_id: str) -> None:
        """Refresh a claimed message's heartbeat so reclaim_stale() leaves it alone."""
        with self._session() as conn:
            conn.execute(
                "UPDATE task_messages SET updated_at = ? WHERE task_id = ? AND status = 'claimed'",
                (time.time(), str(task_id)),
            )
            conn.commit()

    def reclaim_stale(self, *, older_than_ts: float) -> list[str]:
        """
        Put claimed messages whose heartbeat is older than older_than_ts back in the queue.

        A worker that crashed, lost its store or was killed mid-task never acks;
        this is how its messages become runnable again. Returns the reclaimed ids.
        """
        reclaimed: list[str] = []
        with self._session() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT task_id FROM task_messages WHERE status = 'claimed' AND updated_at < ?",
                (float(older_than_ts),),
            )
            candidates = [str(r["task_id"]) for r in cur.fetchall()]
            for task_id in candidates:
                cur.execute(
                    "UPDATE task_messages SET status = 'queued', updated_at = ? "
                    "WHERE task_id = ? AND status = 'claimed' AND updated_at < ?",
                    (time.time(), task_id, float(older_than_ts)),
                )
                if cur.rowcount == 1:
                    reclaimed.append(task_id)
            conn.commit()

        for task_id in reclaimed:
            logger.warning("Message %s was claimed by a worker that went away; requeued", task_id)
        return reclaimed

    def requeue(self, task_id: str, *, eta: float, retries: int) -> None:
        with self._session() as conn:
            conn.execute(
                "UPDATE task_messages SET status = 'queued', eta = ?, retries = ?, updated_at = ? "
                "WHERE task_id = ? AND status = 'claimed'",
                (float(eta), int(retries), time.time(), str(task_id)),
            )
            conn.commit()

    def ack(self, task_id: str) -> None:
        with self._session() as conn:
            conn.execute(
                "UPDATE task_messages SET status = 'done', updated_at = ? WHERE task_id = ?",
                (time.time(), str(task_id)),
            )
            conn.commit()
