# src/btq/engine/status.py
from __future__ import annotations

from typing import Optional

from btq.domain.models import QueuePosition, StatusView, TaskRecord
from btq.domain.states import TaskState
from btq.storage import SQLiteDB, open_repo
from btq.storage.db import snapshot


class StatusQuery:
    """
    Read-only view for pollers: lifecycle state plus queue position.

    Record and position are read in one snapshot, so a task that is claimed
    between the two reads is never shown as PENDING without a position.
    """

    def __init__(self, db: SQLiteDB, *, retention_ms: int) -> None:
        self._db = db
        self.retention_ms = retention_ms

    def query_status(self, task_id: str) -> StatusView:
        with open_repo(self._db) as repo, snapshot(repo.conn):
            record = repo.get_task(task_id)
            position = repo.queue_position(task_id) if record.state is TaskState.PENDING else None
        return self.to_view(record, position)

    def list_status(self, limit: int = 200, offset: int = 0) -> tuple[list[StatusView], int]:
        with open_repo(self._db) as repo, snapshot(repo.conn):
            records, total = repo.list_tasks(limit=limit, offset=offset)
            views = [
                self.to_view(r, repo.queue_position(r.id) if r.state is TaskState.PENDING else None)
                for r in records
            ]
        return views, total

    def to_view(self, record: TaskRecord, position: Optional[QueuePosition]) -> StatusView:
        terminal = record.state.is_terminal
        return StatusView(
            id=record.id,
            name=record.spec.name,
            kind=record.spec.kind,
            state=record.state,
            progress=None if terminal else record.progress,
            result=record.result if terminal else None,
            queue_position=position.position if position else None,
            queue_total=position.total if position else None,
            created_at=record.spec.created_at,
            queued_at=record.queued_at,
            started_at=record.started_at,
            finished_at=record.finished_at,
            expires_at=record.expires_at if terminal else None,
            retention_ms=self.retention_ms,
        )
