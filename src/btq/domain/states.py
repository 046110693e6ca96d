# src/btq/domain/states.py
from __future__ import annotations

from enum import StrEnum


class TaskState(StrEnum):
    """
    Lifecycle states stored in the DB.

      - PENDING: queued, not yet claimed by a worker; removable
      - ACTIVE: claimed by a worker, Builder running; never removable
      - COMPLETED: Builder reported success; removable, expires
      - FAILED: Builder reported failure or raised; removable, expires

    Transitions only move forward: PENDING -> ACTIVE -> COMPLETED | FAILED.
    """

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({TaskState.COMPLETED, TaskState.FAILED})


class BuildKind(StrEnum):
    """Build variants a submitter may ask for."""

    HTML = "html"
    ZIP = "zip"
    HTML_PROJECT = "html-project"
