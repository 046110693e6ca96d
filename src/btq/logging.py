from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping, Optional

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def configure_logging(log_level: str = "info") -> None:
    """
    Configures root logging for the service.

    - logs to stdout with one format for API, scheduler and sweeper threads
    - safe to call again (reload / repeated app startup in tests)
    """
    level = _parse_level(log_level)

    root = logging.getLogger()
    root.setLevel(level)

    for h in list(root.handlers):
        if isinstance(h, logging.StreamHandler):
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(max(level, logging.INFO))
    logging.getLogger("uvicorn.error").setLevel(level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name if name else "btq")


class TaskLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the task id (and human name when known)."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        name = extra.get("task_name")
        tag = f"[{extra.get('task_id')}]" if not name else f"[{extra.get('task_id')} {name}]"
        return f"{tag} {msg}", kwargs


def task_logger(logger: logging.Logger, task_id: str, task_name: Optional[str] = None) -> TaskLogAdapter:
    return TaskLogAdapter(logger, {"task_id": task_id, "task_name": task_name})


def _parse_level(log_level: str) -> int:
    mapping = {
        "critical": logging.CRITICAL,
        "error": logging.ERROR,
        "warning": logging.WARNING,
        "warn": logging.WARNING,
        "info": logging.INFO,
        "debug": logging.DEBUG,
        "trace": logging.DEBUG,
    }
    return mapping.get(log_level.lower().strip(), logging.INFO)
