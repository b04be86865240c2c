# src/taskwatch/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs one subcommand:
dispatch / status / wait / revoke / prune against the configured backend,
or the local worker loop (SQLite backend only).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence

from ..cli.bootstrap import create_initial_state, import_task_modules
from ..config import get_settings
from ..core.errors import (
    DispatchError,
    ResultStoreUnavailable,
    TaskNotFound,
    TaskRevokedError,
    WaitTimeout,
)
from ..core.state import AppState
from ..logging_setup import setup_logging
from ..tasks.task_worker import run_worker

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TASK_FAILED = 1
EXIT_TIMEOUT = 2
EXIT_UNKNOWN = 3
EXIT_USAGE = 64


def _json_arg(raw: str | None, default, expected: type, label: str):
    if raw is None:
        return default
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{label} is not valid JSON: {exc}") from exc
    if not isinstance(value, expected):
        raise argparse.ArgumentTypeError(f"{label} must be a JSON {expected.__name__}")
    return value


def _emit(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskwatch", description="Dispatch and track background tasks.")
    parser.add_argument(
        "--import",
        dest="modules",
        action="append",
        default=[],
        metavar="MODULE",
        help="Import a module that registers tasks (repeatable).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("dispatch", help="Submit a registered task.")
    p.add_argument("name")
    p.add_argument("--args", default=None, help="JSON list of positional inputs.")
    p.add_argument("--kwargs", default=None, help="JSON object of named inputs.")
    p.add_argument("--delay", type=float, default=None, help="Seconds before the task is eligible.")
    p.add_argument("--expires", type=float, default=None, help="Seconds after which it must not start.")
    p.add_argument("--queue", default=None)

    p = sub.add_parser("status", help="Print the current state of a task.")
    p.add_argument("task_id")

    p = sub.add_parser("wait", help="Wait for a task and print its result.")
    p.add_argument("task_id")
    p.add_argument("--timeout", type=float, default=None)
    p.add_argument("--interval", type=float, default=None)

    p = sub.add_parser("revoke", help="Cancel a task that has not finished.")
    p.add_argument("task_id")

    sub.add_parser("prune", help="Delete result records past their retention period.")

    p = sub.add_parser("worker", help="Run the local worker (SQLite backend).")
    p.add_argument("--queue", dest="queues", action="append", default=[], help="Queue to consume (repeatable).")

    return parser


def _cmd_dispatch(state: AppState, ns: argparse.Namespace) -> int:
    args = _json_arg(ns.args, [], list, "--args")
    kwargs = _json_arg(ns.kwargs, {}, dict, "--kwargs")
    options: dict = {}
    if ns.delay is not None:
        options["delay_seconds"] = ns.delay
    if ns.expires is not None:
        options["expires_after_seconds"] = ns.expires
    if ns.queue:
        options["queue"] = ns.queue

    handle = state.client.dispatch(ns.name, args, kwargs, options)
    _emit({"task_id": handle.id, "state": "PENDING"})
    return EXIT_OK


def _cmd_status(state: AppState, ns: argparse.Namespace) -> int:
    record = state.client.fetch_record(ns.task_id)
    payload = {
        "task_id": record.task_id,
        "state": record.state.value,
        "ready": record.ready,
        "retries": record.retries,
    }
    if record.failure is not None:
        payload["error"] = repr(record.failure)
    _emit(payload)
    return EXIT_OK


def _cmd_wait(state: AppState, ns: argparse.Namespace) -> int:
    try:
        value = state.client.await_result(ns.task_id, ns.timeout, interval=ns.interval)
    except WaitTimeout as exc:
        _emit({"task_id": ns.task_id, "state": exc.last_state, "timeout": True})
        return EXIT_TIMEOUT
    except TaskRevokedError:
        _emit({"task_id": ns.task_id, "state": "REVOKED"})
        return EXIT_TASK_FAILED
    except (TaskNotFound, ResultStoreUnavailable):
        raise
    except Exception as exc:
        _emit({"task_id": ns.task_id, "state": "FAILURE", "error": repr(exc)})
        return EXIT_TASK_FAILED

    _emit({"task_id": ns.task_id, "state": "SUCCESS", "result": value})
    return EXIT_OK


def _cmd_revoke(state: AppState, ns: argparse.Namespace) -> int:
    revoked = state.client.revoke(ns.task_id)
    _emit({"task_id": ns.task_id, "revoked": revoked})
    return EXIT_OK


def _cmd_prune(state: AppState, ns: argparse.Namespace) -> int:
    _emit({"pruned": state.results.prune_expired()})
    return EXIT_OK


def _cmd_worker(state: AppState, ns: argparse.Namespace) -> int:
    if state.queue is None:
        logger.error("The local worker needs the sqlite backend; run a Celery worker instead.")
        return EXIT_USAGE

    settings = state.settings
    try:
        asyncio.run(
            run_worker(
                state.queue,
                state.results,
                state.registry,
                queues=ns.queues or [settings.default_queue],
                interval_seconds=settings.worker_interval_seconds,
                batch_limit=settings.worker_batch_limit,
                claim_timeout_seconds=settings.worker_claim_timeout_seconds,
            )
        )
    except KeyboardInterrupt:
        logger.info("Worker stopped.")
    return EXIT_OK


_COMMANDS = {
    "dispatch": _cmd_dispatch,
    "status": _cmd_status,
    "wait": _cmd_wait,
    "revoke": _cmd_revoke,
    "prune": _cmd_prune,
    "worker": _cmd_worker,
}


def run(argv: Sequence[str] | None = None, *, state: AppState | None = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)

    if ns.modules:
        import_task_modules(ns.modules)

    if state is None:
        state = create_initial_state()

    try:
        return _COMMANDS[ns.command](state, ns)
    except argparse.ArgumentTypeError as exc:
        parser.print_usage(sys.stderr)
        print(f"taskwatch: error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except DispatchError as exc:
        logger.error("Dispatch rejected: %s", exc)
        return EXIT_USAGE
    except (TaskNotFound, ResultStoreUnavailable) as exc:
        _emit({"task_id": getattr(ns, "task_id", None), "state": "UNKNOWN", "error": str(exc)})
        return EXIT_UNKNOWN


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logging.getLogger("celery").setLevel(logging.WARNING)
    logging.getLogger("kombu").setLevel(logging.WARNING)

    sys.exit(run())


if __name__ == "__main__":
    main()
