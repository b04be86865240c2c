# src/taskwatch/logging_setup.py

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Minimum level shown on the console per logger prefix. Names matching no
# prefix fall back to WARNING.
CONSOLE_MIN_LEVELS: dict[str, int] = {
    "taskwatch": logging.NOTSET,
    "py.warnings": logging.ERROR,
    "celery": logging.ERROR,
    "kombu": logging.ERROR,
    "amqp": logging.ERROR,
    "redis": logging.ERROR,
}


class _ConsoleNoiseFilter(logging.Filter):
    """
    Per-prefix console thresholds.

    The longest prefix that matches a logger name wins, so
    {"celery": ERROR, "celery.worker": INFO} lets worker lifecycle lines
    through while the rest of Celery stays quiet. A prefix matches the logger
    itself and its children, never a sibling that merely shares the start of
    its name ("redis" does not cover "redisearch").
    """

    def __init__(self, min_levels: Mapping[str, int], default: int = logging.WARNING) -> None:
        super().__init__()
        # Longest first, so the first hit is the most specific.
        self._rules = sorted(min_levels.items(), key=lambda item: len(item[0]), reverse=True)
        self._default = default

    def threshold(self, name: str) -> int:
        for prefix, level in self._rules:
            if name == prefix or name.startswith(prefix + "."):
                return level
        return self._default

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= self.threshold(record.name)


def setup_logging(
    *,
    log_dir: str | Path = ".local/taskwatch",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    console_min_levels: Mapping[str, int] | None = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> None:
    """
    Configure logging with:
    - Console handler: readable + filtered (see CONSOLE_MIN_LEVELS)
    - File handler: full logs, rotated so a long-running worker cannot fill the disk

    console_min_levels is merged over CONSOLE_MIN_LEVELS.

    Call this ONCE, very early (before first logger.info).
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "taskwatch.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    levels = dict(CONSOLE_MIN_LEVELS)
    if console_min_levels:
        levels.update(console_min_levels)

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter(levels))
    root.addHandler(ch)

    fh = RotatingFileHandler(str(log_file), maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    fh.setLevel(file_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    # warnings.warn(...) -> 'py.warnings'
    logging.captureWarnings(True)
