"""
File naming for build outputs and staged uploads.

Every task-scoped file is named ``<humanName>--<taskId>.<ext>`` so two tasks
that share a human name never write the same path, and so the sweeper can map
any file back to the task that owns it.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from btq.domain.models import DEFAULT_APP_NAME, TASK_ID_PATTERN

SEPARATOR = "--"

_UNSAFE = re.compile(r"[^A-Za-z0-9._ -]+")
_DASH_RUN = re.compile(r"-{2,}")
_TASK_ID_RE = re.compile(TASK_ID_PATTERN)


def sanitize_name(name: Optional[str], default: str = DEFAULT_APP_NAME) -> str:
    """
    Reduces a human-chosen name to a filesystem-safe token: no path
    separators, no leading dots, no ``--`` runs (reserved as separator).
    """
    cleaned = _UNSAFE.sub("_", (name or "").strip())
    cleaned = _DASH_RUN.sub("-", cleaned).strip(" .-")
    cleaned = cleaned.replace(" ", "_")
    return cleaned[:100] or default


def artifact_name(name: Optional[str], task_id: str, ext: str) -> str:
    ext = ext.lstrip(".")
    stem = f"{sanitize_name(name)}{SEPARATOR}{task_id}"
    return f"{stem}.{ext}" if ext else stem


def artifact_path(output_dir: str | Path, name: Optional[str], task_id: str, ext: str) -> Path:
    return Path(output_dir) / artifact_name(name, task_id, ext)


def task_id_from_path(path: str | Path) -> Optional[str]:
    """
    Returns the task id embedded in a file or directory name, or None for
    names that do not follow the convention (orphans, foreign files).

    >>> task_id_from_path("builds/My-App--a1b2c3.apk")
    'a1b2c3'
    """
    name = Path(path).name
    if SEPARATOR not in name:
        return None
    tail = name.rsplit(SEPARATOR, 1)[1]
    candidate = tail.split(".", 1)[0]
    if not candidate or not _TASK_ID_RE.match(candidate):
        return None
    return candidate
