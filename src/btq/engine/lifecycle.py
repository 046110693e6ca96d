# src/btq/engine/lifecycle.py
from __future__ import annotations

import time
from typing import Optional, Sequence

from btq.domain.models import BuildResult, Progress, TaskRecord
from btq.domain.states import TaskState
from btq.storage import SQLiteDB, open_repo


def now_ms() -> int:
    return int(time.time() * 1000)


def clamp_percent(percent: float) -> int:
    return max(0, min(100, int(percent)))


class LifecycleTracker:
    """
    Reads and writes of the per-task state machine.

    Only the worker pool calls the write side. Transitions are compare-and-swap
    on the stored state; a failed guard raises InvalidTransitionError instead
    of being papered over.
    """

    def __init__(self, db: SQLiteDB, *, retention_ms: int) -> None:
        self._db = db
        self.retention_ms = retention_ms

    # reads

    def record(self, task_id: str) -> TaskRecord:
        with open_repo(self._db) as repo:
            return repo.get_task(task_id)

    def current_state(self, task_id: str) -> TaskState:
        return self.record(task_id).state

    def current_progress(self, task_id: str) -> Progress:
        return self.record(task_id).progress

    def current_result(self, task_id: str) -> Optional[BuildResult]:
        return self.record(task_id).result

    # writes

    def record_progress(self, task_id: str, message: str, percent: float) -> bool:
        """
        Overwrites the task's progress. Returns False when the task is no longer
        ACTIVE (e.g. a heartbeat racing the final transition); that is not an error.
        """
        with open_repo(self._db) as repo:
            return repo.update_progress(task_id, message, clamp_percent(percent), now_ms())

    def finish(self, task_id: str, result: BuildResult) -> TaskState:
        """ACTIVE -> COMPLETED / FAILED with finished_at and expires_at stamped."""
        with open_repo(self._db) as repo:
            return repo.finish(task_id, result, now_ms(), self.retention_ms)

    def complete(self, task_id: str, artifact_path: Optional[str], duration_ms: Optional[int] = None) -> TaskState:
        return self.finish(
            task_id, BuildResult(success=True, artifact_path=artifact_path, duration_ms=duration_ms)
        )

    def fail(self, task_id: str, error: str, duration_ms: Optional[int] = None) -> TaskState:
        return self.finish(
            task_id, BuildResult(success=False, error=error or "Build failed", duration_ms=duration_ms)
        )

    def renew_leases(self, task_ids: Sequence[str], lease_ms: int) -> int:
        with open_repo(self._db) as repo:
            return repo.renew_leases(task_ids, now_ms(), lease_ms)
