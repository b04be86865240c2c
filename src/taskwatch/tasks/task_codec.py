# src/taskwatch/tasks/task_codec.py

"""
JSON encoding for task inputs, results and failures.

Failures are stored as (type, module, message, args) and rebuilt on read, so the
caller gets an exception of the original class back when that class is
importable. Anything that cannot be rebuilt becomes a RemoteTaskError.
"""

from __future__ import annotations

import builtins
import importlib
import json
import logging
import traceback as tb
from typing import Any

from ..core.errors import RemoteTaskError, ResultEncodeError

logger = logging.getLogger(__name__)


def dumps(value: Any) -> str:
    """Encode a value as JSON; raise ResultEncodeError when it is not representable."""
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise ResultEncodeError(f"Value of type {type(value).__name__} is not JSON serializable") from exc


def loads(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    return json.loads(raw)


def encode_exception(exc: BaseException) -> dict[str, Any]:
    cls = type(exc)
    try:
        args = json.loads(json.dumps(list(exc.args)))
    except (TypeError, ValueError):
        args = [str(a) for a in exc.args]
    return {
        "exc_type": cls.__qualname__,
        "exc_module": cls.__module__,
        "exc_message": str(exc),
        "exc_args": args,
    }


def format_traceback(exc: BaseException) -> str:
    return "".join(tb.format_exception(type(exc), exc, exc.__traceback__))


def _resolve_exception_class(module_name: str, qualname: str) -> type[BaseException] | None:
    if module_name == "builtins":
        obj: Any = builtins
    else:
        try:
            obj = importlib.import_module(module_name)
        except ImportError:
            return None
    for part in qualname.split("."):
        obj = getattr(obj, part, None)
        if obj is None:
            return None
    if isinstance(obj, type) and issubclass(obj, Exception):
        return obj
    return None


def decode_exception(payload: dict[str, Any] | None) -> BaseException | None:
    if not payload:
        return None

    exc_type = str(payload.get("exc_type") or "Exception")
    module_name = str(payload.get("exc_module") or "builtins")
    message = str(payload.get("exc_message") or "")
    args = payload.get("exc_args")
    if not isinstance(args, list):
        args = [message] if message else []

    cls = _resolve_exception_class(module_name, exc_type)
    if cls is not None:
        try:
            return cls(*args)
        except Exception:
            logger.debug("Cannot rebuild %s.%s from args=%r", module_name, exc_type, args, exc_info=True)

    full_name = exc_type if module_name == "builtins" else f"{module_name}.{exc_type}"
    return RemoteTaskError(full_name, message)
