from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from threading import Lock

_task_id_var: ContextVar[str | None] = ContextVar("task_id", default=None)
_epic_id_var: ContextVar[str | None] = ContextVar("epic_id", default=None)

_ROOT_LOGGER = "epicflow"
_configure_lock = Lock()


@contextmanager
def task_context(task_id: str | None = None, epic_id: str | None = None) -> Iterator[None]:
    """Attach task/epic correlation ids to every record logged inside the block."""
    task_token = _task_id_var.set(task_id)
    epic_token = _epic_id_var.set(epic_id)
    try:
        yield
    finally:
        _task_id_var.reset(task_token)
        _epic_id_var.reset(epic_token)


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "task_id", None) is None:
            record.task_id = _task_id_var.get(None)
        if getattr(record, "epic_id", None) is None:
            record.epic_id = _epic_id_var.get(None)
        return True


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line with correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        task_id = getattr(record, "task_id", None)
        if task_id:
            payload["task_id"] = task_id
        epic_id = getattr(record, "epic_id", None)
        if epic_id:
            payload["epic_id"] = epic_id
        if record.exc_info and record.exc_info[1] is not None:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class _StderrHandler(logging.StreamHandler):
    """Resolves ``sys.stderr`` on every emit so redirected streams are honoured."""

    def __init__(self) -> None:
        super().__init__(sys.stderr)

    @property
    def stream(self):
        return sys.stderr

    @stream.setter
    def stream(self, value) -> None:
        pass


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rendered = super().format(record)
        task_id = getattr(record, "task_id", None)
        if task_id:
            return f"{rendered} [{task_id}]"
        return rendered


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_logging."""
    return logging.getLogger(name)


def configure_logging(*, level: str = "INFO", json_format: bool = False) -> None:
    with _configure_lock:
        root = logging.getLogger(_ROOT_LOGGER)
        for handler in list(root.handlers):
            if getattr(handler, "_epicflow_handler", False):
                root.removeHandler(handler)
        handler = _StderrHandler()
        handler._epicflow_handler = True  # type: ignore[attr-defined]
        handler.addFilter(_ContextFilter())
        if json_format:
            handler.setFormatter(_JsonFormatter())
        else:
            handler.setFormatter(_TextFormatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
        root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
