# src/btq/engine/queue.py
from __future__ import annotations

import time
from typing import Optional

from btq.domain.models import QueuePosition, TaskRecord, TaskSpec
from btq.logging import get_logger
from btq.storage import SQLiteDB, open_repo

_LOG = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class TaskQueue:
    """
    Durable task store keyed by task id.

    Each call runs on its own short-lived connection, so it can be used from
    request handlers, pollers and the sweeper concurrently. Nothing here ever
    waits on a running build.
    """

    def __init__(self, db: SQLiteDB) -> None:
        self._db = db

    def enqueue(self, spec: TaskSpec) -> tuple[TaskRecord, bool]:
        """
        Admits spec as PENDING, or returns the existing record for spec.id.
        The second element tells whether a new record was created.
        """
        with open_repo(self._db) as repo:
            record, created = repo.enqueue(spec, now_ms())
        if created:
            _LOG.info("Enqueued task %s (%s, name=%r)", spec.id, spec.kind, spec.name)
        else:
            _LOG.info("Task %s already exists (state=%s); not enqueued again", spec.id, record.state)
        return record, created

    def get(self, task_id: str) -> TaskRecord:
        with open_repo(self._db) as repo:
            return repo.get_task(task_id)

    def remove(self, task_id: str) -> bool:
        """
        Deletes a PENDING or finished record. Returns False for an ACTIVE one,
        which is left untouched. Raises NotFoundError for unknown ids.
        """
        with open_repo(self._db) as repo:
            removed = repo.remove(task_id)
        if removed:
            _LOG.info("Removed task %s", task_id)
        return removed

    def peek_position(self, task_id: str) -> Optional[QueuePosition]:
        with open_repo(self._db) as repo:
            return repo.queue_position(task_id)

    def list(self, limit: int = 200, offset: int = 0) -> tuple[list[TaskRecord], int]:
        with open_repo(self._db) as repo:
            return repo.list_tasks(limit=limit, offset=offset)
