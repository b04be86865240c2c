# src/taskwatch/tasks/task_worker.py

from __future__ import annotations

"""
Local worker.

A small polling loop that:
- fetches runnable messages from the local queue,
- claims them (conditional update, so no message runs twice),
- moves the result record through STARTED to a terminal state,
- reschedules the message when the task asks for a retry.

It is the execution layer for the SQLite backend. With the Celery backend,
Celery's own worker does this job.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from ..core.errors import NotRegistered, ResultEncodeError, Retry, TaskExpired, TaskNotFound, WorkerLost
from ..core.ports import ResultStore, WorkQueue
from . import task_codec
from .task_models import QueuedMessage, TaskState
from .task_registry import TaskDefinition, TaskRegistry

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    RETRY = "retry"
    REVOKED = "revoked"
    EXPIRED = "expired"
    SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class ExecutionReport:
    """What happened to one message during a worker pass."""

    task_id: str
    task_name: str
    outcome: Outcome


async def _call(definition: TaskDefinition, message: QueuedMessage):
    func = definition.func
    if inspect.iscoroutinefunction(func):
        return await func(*message.args, **message.kwargs)
    return await asyncio.to_thread(func, *message.args, **message.kwargs)


def _retry_decision(
    definition: TaskDefinition, message: QueuedMessage, exc: BaseException
) -> tuple[bool, float, BaseException]:
    """Returns (should_retry, countdown, cause)."""
    if isinstance(exc, Retry):
        cause: BaseException = exc.exc if exc.exc is not None else exc
        countdown = definition.retry_delay_seconds if exc.countdown is None else max(0.0, exc.countdown)
    elif definition.autoretry_for and isinstance(exc, definition.autoretry_for):
        cause = exc
        countdown = definition.retry_delay_seconds
    else:
        return False, 0.0, exc

    return message.retries < definition.max_retries, countdown, cause


def _fail(results: ResultStore, message: QueuedMessage, exc: BaseException) -> None:
    written = results.set_state(
        message.task_id,
        TaskState.FAILURE,
        failure=exc,
        traceback=task_codec.format_traceback(exc),
        retries=message.retries,
    )
    if written:
        logger.info("Task %s (%s) -> FAILURE: %r", message.task_id, message.task_name, exc)
    else:
        logger.info("Task %s finished with an error after it was revoked; discarding", message.task_id)


async def _heartbeat(queue: WorkQueue, task_id: str, every: float) -> None:
    while True:
        await asyncio.sleep(every)
        try:
            queue.touch(task_id)
        except Exception:
            logger.exception("touch failed task_id=%s", task_id)


def _start_heartbeat(queue: WorkQueue, task_id: str, every: float | None) -> asyncio.Task | None:
    if not every or every <= 0:
        return None
    return asyncio.create_task(_heartbeat(queue, task_id, every))


def _release(queue: WorkQueue, results: ResultStore, message: QueuedMessage) -> None:
    """Hand a message back to the queue when the worker is stopped mid-task."""
    task_id = message.task_id
    try:
        if results.set_state(
            task_id,
            TaskState.RETRY,
            failure=WorkerLost(f"Worker stopped while running task {task_id}"),
            retries=message.retries,
        ):
            queue.requeue(task_id, eta=time.time(), retries=message.retries)
            logger.warning("Task %s interrupted by worker shutdown; requeued", task_id)
        else:
            queue.ack(task_id)
    except Exception:
        # Left claimed; reclaim_stale() picks it up once the claim times out.
        logger.exception("Failed to release task_id=%s", task_id)


def _reclaim_stale(queue: WorkQueue, results: ResultStore, *, older_than_ts: float) -> None:
    try:
        task_ids = queue.reclaim_stale(older_than_ts=older_than_ts)
    except Exception:
        logger.exception("reclaim_stale failed")
        return

    for task_id in task_ids:
        # PENDING (lost before it started) or terminal (lost before ack) records refuse this.
        try:
            results.set_state(
                task_id,
                TaskState.RETRY,
                failure=WorkerLost(f"Worker running task {task_id} stopped responding"),
            )
        except Exception:
            logger.exception("Failed to mark reclaimed task_id=%s", task_id)


async def execute_message(
    message: QueuedMessage,
    queue: WorkQueue,
    results: ResultStore,
    registry: TaskRegistry,
    *,
    now_ts: float | None = None,
    heartbeat_seconds: float | None = None,
) -> Outcome:
    """
    Run one claimed message to completion and record the outcome.

    Expiry is judged against the clock at the moment the task would start
    (now_ts overrides it). With heartbeat_seconds set, the claim is refreshed
    while the task runs so another worker's reclaim_stale() does not steal it.
    """
    task_id = message.task_id

    try:
        state = results.get_state(task_id)
    except TaskNotFound:
        logger.warning("Task %s has no result record (expired?); dropping message", task_id)
        queue.ack(task_id)
        return Outcome.SKIPPED

    if state == TaskState.REVOKED:
        logger.info("Task %s was revoked before start; skipping", task_id)
        queue.ack(task_id)
        return Outcome.REVOKED

    now = time.time() if now_ts is None else now_ts
    if message.expires_at is not None and now > message.expires_at:
        results.set_state(
            task_id,
            TaskState.REVOKED,
            failure=TaskExpired(f"Task {task_id} expired before it started"),
        )
        logger.info("Task %s (%s) expired before start", task_id, message.task_name)
        queue.ack(task_id)
        return Outcome.EXPIRED

    if not results.set_state(task_id, TaskState.STARTED, retries=message.retries):
        logger.info("Task %s cannot start from state %s; skipping", task_id, state.value)
        queue.ack(task_id)
        return Outcome.SKIPPED

    try:
        definition = registry.get(message.task_name)
    except NotRegistered as exc:
        logger.error("Received unregistered task %s id=%s", message.task_name, task_id)
        _fail(results, message, exc)
        queue.ack(task_id)
        return Outcome.FAILURE

    logger.info("Task %s (%s) started, attempt %d", task_id, message.task_name, message.retries + 1)

    heartbeat = _start_heartbeat(queue, task_id, heartbeat_seconds)
    try:
        value = await _call(definition, message)
    except asyncio.CancelledError:
        _release(queue, results, message)
        raise
    except Exception as exc:
        should_retry, countdown, cause = _retry_decision(definition, message, exc)
        if should_retry:
            retries = message.retries + 1
            if results.set_state(
                task_id,
                TaskState.RETRY,
                failure=cause,
                traceback=task_codec.format_traceback(cause),
                retries=retries,
            ):
                queue.requeue(task_id, eta=time.time() + countdown, retries=retries)
                logger.info(
                    "Task %s -> RETRY %d/%d in %.2fs: %r",
                    task_id,
                    retries,
                    definition.max_retries,
                    countdown,
                    cause,
                )
                return Outcome.RETRY
            queue.ack(task_id)
            return Outcome.REVOKED

        if isinstance(exc, Retry):
            logger.info("Task %s exhausted %d retries", task_id, definition.max_retries)
        else:
            logger.debug("Task %s raised", task_id, exc_info=True)
        _fail(results, message, cause)
        queue.ack(task_id)
        return Outcome.FAILURE
    finally:
        if heartbeat is not None:
            heartbeat.cancel()

    try:
        written = results.set_state(task_id, TaskState.SUCCESS, result=value, retries=message.retries)
    except ResultEncodeError as exc:
        _fail(results, message, exc)
        queue.ack(task_id)
        return Outcome.FAILURE

    queue.ack(task_id)
    if not written:
        logger.info("Task %s finished after it was revoked; result discarded", task_id)
        return Outcome.REVOKED

    logger.info("Task %s (%s) -> SUCCESS", task_id, message.task_name)
    return Outcome.SUCCESS


async def process_batch(
    queue: WorkQueue,
    results: ResultStore,
    registry: TaskRegistry,
    *,
    queues: Iterable[str] | None = None,
    batch_limit: int = 32,
    now_ts: float | None = None,
    claim_timeout_seconds: float | None = None,
) -> list[ExecutionReport]:
    """
    One worker pass: claim and run every runnable message (up to batch_limit).

    now_ts only decides which messages are due; each message checks its own
    expiry against the clock right before it starts.

    claim_timeout_seconds: claimed messages whose heartbeat is older than this
    are requeued first (their worker is gone), and messages run here keep
    their own claim fresh.
    """
    now = time.time() if now_ts is None else now_ts
    queue_list = list(queues or [])
    reports: list[ExecutionReport] = []

    heartbeat_seconds: float | None = None
    if claim_timeout_seconds is not None and claim_timeout_seconds > 0:
        _reclaim_stale(queue, results, older_than_ts=now - claim_timeout_seconds)
        heartbeat_seconds = max(0.01, claim_timeout_seconds / 3)

    try:
        messages = queue.list_runnable(now_ts=now, queues=queue_list, limit=int(batch_limit))
    except Exception:
        logger.exception("list_runnable failed")
        return reports

    for message in messages:
        try:
            claimed = queue.try_claim(message.task_id)
        except Exception:
            logger.exception("try_claim failed task_id=%s", message.task_id)
            continue

        if not claimed:
            continue

        try:
            outcome = await execute_message(
                message, queue, results, registry, heartbeat_seconds=heartbeat_seconds
            )
        except Exception:
            # Store/queue outage mid-run: the message stays claimed until
            # reclaim_stale() hands it to the next pass.
            logger.exception("execute_message failed task_id=%s", message.task_id)
            continue

        reports.append(ExecutionReport(message.task_id, message.task_name, outcome))

    return reports


async def run_worker(
        queue: WorkQueue,
        results: ResultStore,
        registry: TaskRegistry,
        *,
        queues: Iterable[str] | None = None,
        interval_seconds: float = 1.0,
        batch_limit: int = 32,
        claim_timeout_seconds: float = 300.0,
) -> None:
    """
    Simple polling worker.

    Every interval_seconds, run process_batch(). A pass that found work is
    followed immediately by another one.

    To stop the worker, cancel the coroutine/task. A task interrupted that way
    is put back in the queue as RETRY.
    """
    sleep_s = max(0.01, float(interval_seconds))
    queue_list = list(queues or [])
    logger.info(
        "Worker started queues=%s tasks=%s claim_timeout=%ss",
        ",".join(queue_list) or "*",
        ",".join(registry.names()) or "-",
        claim_timeout_seconds,
    )

    while True:
        reports = await process_batch(
            queue,
            results,
            registry,
            queues=queue_list,
            batch_limit=batch_limit,
            claim_timeout_seconds=claim_timeout_seconds,
        )
        if not reports:
            await asyncio.sleep(sleep_s)
        else:
            # Yield to the loop between busy passes.
            await asyncio.sleep(0)
