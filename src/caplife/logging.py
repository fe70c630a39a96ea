"""JSONL log file for a caplife project.

Every ``caplife.*`` logger ends up in ``.caplife/caplife.log``, one JSON
object per line, rotated at 5MB with three backups kept. Lifecycle code
attaches context through ``extra=``; only the keys in ``CONTEXT_KEYS`` are
copied into the line.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILENAME = "caplife.log"
ROOT_LOGGER = "caplife"
ROTATE_AT_BYTES = 5 * 1024 * 1024
KEEP_ROTATED = 3

CONTEXT_KEYS = ("template_id", "plan_id", "operation", "actor", "duration_ms", "error")

_install_lock = threading.Lock()


class JsonLineFormatter(logging.Formatter):
    def __init__(self, context_keys: tuple[str, ...] = CONTEXT_KEYS) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")
        self.context_keys = context_keys

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        line.update({key: record.__dict__[key] for key in self.context_keys if key in record.__dict__})
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            line["exception"] = f"{type(exc).__name__}: {exc}"
        return json.dumps(line, default=str)


def _project_handler(logger: logging.Logger, log_file: str) -> RotatingFileHandler | None:
    """Return the handler already writing *log_file*, dropping handlers for other projects."""
    found = None
    for handler in list(logger.handlers):
        if not isinstance(handler, RotatingFileHandler):
            continue
        if handler.baseFilename == log_file:
            found = handler
            continue
        logger.removeHandler(handler)
        handler.close()
    return found


def setup_logging(caplife_dir: Path, *, level: str | int = logging.INFO) -> logging.Logger:
    """Send ``caplife`` logging to ``caplife_dir/caplife.log``.

    Safe to call repeatedly and from several threads: one handler per
    process, and pointing at a new directory swaps it out.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    log_file = os.path.abspath(caplife_dir / LOG_FILENAME)
    with _install_lock:
        if _project_handler(logger, log_file) is None:
            handler = RotatingFileHandler(log_file, maxBytes=ROTATE_AT_BYTES, backupCount=KEEP_ROTATED)
            handler.setFormatter(JsonLineFormatter())
            logger.addHandler(handler)
        logger.setLevel(level.upper() if isinstance(level, str) else level)
    return logger
