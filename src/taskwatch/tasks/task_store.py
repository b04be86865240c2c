# src/taskwatch/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from ..core.errors import ResultStoreUnavailable, TaskNotFound
from . import task_codec
from .task_models import TaskRecord, TaskState, predecessors

logger = logging.getLogger(__name__)

DEFAULT_RESULT_TTL_SECONDS = 86400


class TaskStore:
    """
    SQLite result store.

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    State changes go through a single conditional UPDATE
    (state IN <allowed predecessors>), so concurrent writers cannot break the
    lifecycle and a terminal record is never rewritten.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(
        self,
        db_path: str | Path = "results.sqlite3",
        *,
        result_ttl_seconds: float = DEFAULT_RESULT_TTL_SECONDS,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ttl = float(result_ttl_seconds)
        self._ensure_schema()
        try:
            total = self.count()
        except ResultStoreUnavailable:
            total = -1
        logger.info("TaskStore ready db=%s total=%s ttl=%ss", self._db_path, total, self._ttl)

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_conn()
        except sqlite3.Error as exc:
            raise ResultStoreUnavailable(f"Cannot open result store {self._db_path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as exc:
            raise ResultStoreUnavailable(f"Result store {self._db_path} failed: {exc}") from exc
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._session() as conn:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_results (
                    task_id TEXT PRIMARY KEY,
                    task_name TEXT,
                    state TEXT NOT NULL DEFAULT 'PENDING',
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    retain_until REAL NOT NULL,
                    expires_at REAL,
                    date_done REAL,
                    result TEXT,
                    failure TEXT,
                    traceback TEXT,
                    retries INTEGER NOT NULL DEFAULT 0
                )
                """
            )

            cur.execute("PRAGMA table_info(task_results)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE task_results ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("expires_at", "REAL")
            add_col("date_done", "REAL")
            add_col("traceback", "TEXT")
            add_col("retries", "INTEGER NOT NULL DEFAULT 0")

            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_task_results_retain ON task_results(retain_until)"
            )
            conn.commit()

    def _row_to_record(self, row: sqlite3.Row) -> TaskRecord:
        failure_raw = row["failure"]
        return TaskRecord(
            task_id=str(row["task_id"]),
            state=TaskState.from_db(row["state"]),
            task_name=row["task_name"],
            result=task_codec.loads(row["result"]),
            failure=task_codec.decode_exception(json.loads(failure_raw)) if failure_raw else None,
            traceback=row["traceback"],
            retries=int(row["retries"] or 0),
            expires_at=float(row["expires_at"]) if row["expires_at"] is not None else None,
            date_done=float(row["date_done"]) if row["date_done"] is not None else None,
            updated_at=float(row["updated_at"] or 0.0),
        )

    def _fetch_live_row(self, conn: sqlite3.Connection, task_id: str, now_ts: float) -> sqlite3.Row:
        cur = conn.cursor()
        cur.execute("SELECT * FROM task_results WHERE task_id = ?", (str(task_id),))
        row = cur.fetchone()
        # A record past retention reads as unknown even before prune_expired() removes it.
        if row is None or float(row["retain_until"]) <= now_ts:
            raise TaskNotFound(task_id)
        return row

    # ---- public API ----

    def count(self) -> int:
        with self._session() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM task_results")
            (n,) = cur.fetchone()
            return int(n)

    def create(self, record: TaskRecord, *, ttl_seconds: float | None = None) -> None:
        """
        Insert the initial record of a freshly dispatched task.

        Identifiers are never reused: inserting an existing id is an error.
        """
        now = time.time()
        ttl = self._ttl if ttl_seconds is None else float(ttl_seconds)

        with self._session() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO task_results(
                        task_id, task_name, state,
                        created_at, updated_at, retain_until, expires_at,
                        retries
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.task_id,
                        record.task_name,
                        record.state.value,
                        now,
                        now,
                        now + ttl,
                        record.expires_at,
                        int(record.retries),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Task id {record.task_id} already exists") from exc
            conn.commit()

        logger.debug("Result record created id=%s name=%s", record.task_id, record.task_name)

    def get_state(self, task_id: str) -> TaskState:
        with self._session() as conn:
            row = self._fetch_live_row(conn, task_id, time.time())
            return TaskState.from_db(row["state"])

    def get_result(self, task_id: str) -> TaskRecord:
        with self._session() as conn:
            row = self._fetch_live_row(conn, task_id, time.time())
            return self._row_to_record(row)

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
        """
        Move a record to `state` if the lifecycle allows it from its current state.

        Returns True if the row was updated by this call. Raises
        ResultEncodeError (before touching the row) if `result` is not JSON
        serializable.
        """
        allowed_from = [s.value for s in predecessors(state)]
        if not allowed_from:
            return False

        now = time.time()
        fields = ["state = ?", "updated_at = ?"]
        params: list[Any] = [state.value, now]

        if state == TaskState.SUCCESS:
            fields.append("result = ?")
            params.append(task_codec.dumps(result))

        if failure is not None:
            fields.append("failure = ?")
            params.append(json.dumps(task_codec.encode_exception(failure), ensure_ascii=False))

        if traceback is not None:
            fields.append("traceback = ?")
            params.append(traceback)

        if retries is not None:
            fields.append("retries = ?")
            params.append(int(retries))

        if state.is_terminal:
            fields.append("date_done = ?")
            params.append(now)

        placeholders = ",".join("?" for _ in allowed_from)
        sql = (
            f"UPDATE task_results SET {', '.join(fields)} "
            f"WHERE task_id = ? AND retain_until > ? AND state IN ({placeholders})"
        )
        params.extend([str(task_id), now, *allowed_from])

        with self._session() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            conn.commit()
            updated = cur.rowcount == 1

        if updated:
            logger.debug("Task %s -> %s", task_id, state.value)
        else:
            logger.debug("Task %s: transition to %s refused", task_id, state.value)
        return updated

    def forget(self, task_id: str) -> None:
        with self._session() as conn:
            conn.execute("DELETE FROM task_results WHERE task_id = ?", (str(task_id),))
            conn.commit()

    def prune_expired(self, now_ts: float | None = None) -> int:
        """Delete records whose retention period has passed. Returns the number removed."""
        if now_ts is None:
            now_ts = time.time()

        with self._session() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM task_results WHERE retain_until <= ?", (float(now_ts),))
            conn.commit()
            removed = int(cur.rowcount)

        if removed:
            logger.info("Pruned %d expired result records", removed)
        return removed
