# src/btq/storage/repo.py
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

from btq.domain.errors import InvalidTransitionError, NotFoundError
from btq.domain.models import BuildResult, Progress, QueuePosition, TaskRecord, TaskSpec
from btq.domain.states import BuildKind, TaskState
from btq.logging import get_logger

from .db import SQLiteDB, immediate

_LOG = get_logger(__name__)

_COLUMNS = """
    seq, id, kind, name, input_ref, output_dir, options, created_at,
    state, progress_message, progress_percent,
    success, artifact_path, error, duration_ms,
    queued_at, updated_at, started_at, finished_at, expires_at, lease_expires_at
"""

_TERMINAL_STATES = (TaskState.COMPLETED.value, TaskState.FAILED.value)


def _placeholders(items: Sequence[object]) -> str:
    return ",".join("?" for _ in items)


@dataclass
class TaskRepo:
    """
    Repository encapsulating all SQL access to the queue store.

    Important invariants:
    - Enqueue is idempotent on task id (one row per id, ever).
    - Every state change is a compare-and-swap on the current state, so a
      transition can only move PENDING -> ACTIVE -> COMPLETED | FAILED.
    - ACTIVE rows are never deleted.
    - progress_percent only grows (MAX in SQL).
    """
    conn: sqlite3.Connection

    # -------------------------
    # Read operations
    # -------------------------

    def find_task(self, task_id: str) -> Optional[TaskRecord]:
        row = self.conn.execute(
            f"SELECT {_COLUMNS} FROM tasks WHERE id = ?;",
            (task_id,),
        ).fetchone()
        return _row_to_record(row) if row else None

    def get_task(self, task_id: str) -> TaskRecord:
        record = self.find_task(task_id)
        if record is None:
            raise NotFoundError(f"Task not found: {task_id}", details={"id": task_id})
        return record

    def get_state(self, task_id: str) -> Optional[TaskState]:
        row = self.conn.execute("SELECT state FROM tasks WHERE id = ?;", (task_id,)).fetchone()
        return TaskState(row["state"]) if row else None

    def list_tasks(self, limit: int = 200, offset: int = 0) -> tuple[list[TaskRecord], int]:
        total = self.conn.execute("SELECT COUNT(*) AS c FROM tasks;").fetchone()["c"]
        rows = self.conn.execute(
            f"""
            SELECT {_COLUMNS}
            FROM tasks
            ORDER BY queued_at ASC, seq ASC
            LIMIT ? OFFSET ?;
            """,
            (limit, offset),
        ).fetchall()
        return [_row_to_record(r) for r in rows], int(total)

    def queue_position(self, task_id: str) -> Optional[QueuePosition]:
        """
        1-based rank among PENDING rows ordered by (queued_at, seq), plus the
        PENDING total. None if the task is not PENDING (or unknown).

        One statement, so position and total come from the same snapshot.
        """
        row = self.conn.execute(
            """
            SELECT
              (SELECT COUNT(*) FROM tasks p
                WHERE p.state = ?
                  AND (p.queued_at < t.queued_at
                       OR (p.queued_at = t.queued_at AND p.seq < t.seq))) + 1 AS position,
              (SELECT COUNT(*) FROM tasks WHERE state = ?) AS total
            FROM tasks t
            WHERE t.id = ? AND t.state = ?;
            """,
            (TaskState.PENDING.value, TaskState.PENDING.value, task_id, TaskState.PENDING.value),
        ).fetchone()
        if not row:
            return None
        return QueuePosition(position=int(row["position"]), total=int(row["total"]))

    def count_active(self) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS c FROM tasks WHERE state = ?;",
            (TaskState.ACTIVE.value,),
        ).fetchone()
        return int(row["c"])

    def count_pending(self) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS c FROM tasks WHERE state = ?;",
            (TaskState.PENDING.value,),
        ).fetchone()
        return int(row["c"])

    def list_expired(self, now_ms: int) -> list[TaskRecord]:
        rows = self.conn.execute(
            f"""
            SELECT {_COLUMNS}
            FROM tasks
            WHERE state IN ({_placeholders(_TERMINAL_STATES)})
              AND expires_at IS NOT NULL
              AND expires_at <= ?
            ORDER BY expires_at ASC;
            """,
            (*_TERMINAL_STATES, now_ms),
        ).fetchall()
        return [_row_to_record(r) for r in rows]

    # -------------------------
    # Write operations
    # -------------------------

    def enqueue(self, spec: TaskSpec, now_ms: int) -> tuple[TaskRecord, bool]:
        """
        Inserts a PENDING row for spec.id unless one already exists.

        Returns (record, created). An existing row is returned untouched,
        whatever its state: resubmitting an id never schedules a second run.
        """
        with immediate(self.conn):
            created = self.conn.execute(
                """
                INSERT INTO tasks(
                  id, kind, name, input_ref, output_dir, options, created_at,
                  state, queued_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING;
                """,
                (
                    spec.id,
                    spec.kind.value,
                    spec.name,
                    spec.input_ref,
                    spec.output_dir,
                    json.dumps(spec.options, sort_keys=True),
                    spec.created_at,
                    TaskState.PENDING.value,
                    now_ms,
                    now_ms,
                ),
            ).rowcount
            record = self.get_task(spec.id)
        return record, bool(created)

    def remove(self, task_id: str) -> bool:
        """
        Deletes a PENDING, COMPLETED or FAILED row. Returns False (and changes
        nothing) when the row is ACTIVE.
        """
        with immediate(self.conn):
            deleted = self.conn.execute(
                "DELETE FROM tasks WHERE id = ? AND state != ?;",
                (task_id, TaskState.ACTIVE.value),
            ).rowcount
            if deleted:
                return True
            if self.get_state(task_id) is None:
                raise NotFoundError(f"Task not found: {task_id}", details={"id": task_id})
        return False

    def claim_pending(
        self, now_ms: int, lease_ms: int, limit: int, max_active: Optional[int] = None
    ) -> list[TaskSpec]:
        """
        Atomically claims up to `limit` of the oldest PENDING rows and marks
        them ACTIVE with a lease. Returns the claimed specs in queue order.

        With `max_active`, the ACTIVE count is read inside the same write
        transaction, so concurrent claimers sharing the store never take more
        than `max_active` slots between them.
        """
        if limit <= 0:
            return []

        with immediate(self.conn):
            if max_active is not None:
                limit = min(limit, max_active - self.count_active())
                if limit <= 0:
                    return []
            rows = self.conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM tasks
                WHERE state = ?
                ORDER BY queued_at ASC, seq ASC
                LIMIT ?;
                """,
                (TaskState.PENDING.value, limit),
            ).fetchall()
            if not rows:
                return []

            ids = [r["id"] for r in rows]
            self.conn.execute(
                f"""
                UPDATE tasks
                SET state = ?,
                    started_at = ?,
                    updated_at = ?,
                    lease_expires_at = ?
                WHERE id IN ({_placeholders(ids)})
                  AND state = ?;
                """,
                (
                    TaskState.ACTIVE.value,
                    now_ms,
                    now_ms,
                    now_ms + lease_ms,
                    *ids,
                    TaskState.PENDING.value,
                ),
            )
        return [_row_to_record(r).spec for r in rows]

    def update_progress(self, task_id: str, message: str, percent: int, now_ms: int) -> bool:
        """
        Last-value-wins progress write on an ACTIVE row; percent never moves
        backwards. Returns False if the row is no longer ACTIVE.
        """
        updated = self.conn.execute(
            """
            UPDATE tasks
            SET progress_message = ?,
                progress_percent = MAX(progress_percent, ?),
                updated_at = ?
            WHERE id = ?
              AND state = ?;
            """,
            (message, percent, now_ms, task_id, TaskState.ACTIVE.value),
        ).rowcount
        return bool(updated)

    def renew_leases(self, task_ids: Sequence[str], now_ms: int, lease_ms: int) -> int:
        if not task_ids:
            return 0
        return self.conn.execute(
            f"""
            UPDATE tasks
            SET lease_expires_at = ?
            WHERE id IN ({_placeholders(task_ids)})
              AND state = ?;
            """,
            (now_ms + lease_ms, *task_ids, TaskState.ACTIVE.value),
        ).rowcount

    def finish(self, task_id: str, result: BuildResult, now_ms: int, retention_ms: int) -> TaskState:
        """
        ACTIVE -> COMPLETED (result.success) or FAILED, stamping finished_at
        and expires_at = finished_at + retention_ms.
        """
        target = TaskState.COMPLETED if result.success else TaskState.FAILED
        with immediate(self.conn):
            updated = self.conn.execute(
                """
                UPDATE tasks
                SET state = ?,
                    success = ?,
                    artifact_path = ?,
                    error = ?,
                    duration_ms = ?,
                    progress_percent = CASE WHEN ? THEN 100 ELSE progress_percent END,
                    finished_at = ?,
                    expires_at = ?,
                    lease_expires_at = NULL,
                    updated_at = ?
                WHERE id = ?
                  AND state = ?;
                """,
                (
                    target.value,
                    int(result.success),
                    result.artifact_path,
                    result.error,
                    result.duration_ms,
                    int(result.success),
                    now_ms,
                    now_ms + retention_ms,
                    now_ms,
                    task_id,
                    TaskState.ACTIVE.value,
                ),
            ).rowcount
            if updated == 0:
                state = self.get_state(task_id)
                if state is None:
                    raise NotFoundError(f"Task not found: {task_id}", details={"id": task_id})
                raise InvalidTransitionError(
                    f"Task is {state}; cannot move to {target}",
                    details={"id": task_id, "state": state.value, "target": target.value},
                )
        return target

    def fail_stale_active(
        self, now_ms: int, retention_ms: int, error: str, exclude: Sequence[str] = ()
    ) -> list[str]:
        """
        Crash recovery: ACTIVE rows whose lease expired are FAILED (never
        re-queued). Rows in `exclude` (builds the caller is still running)
        are skipped. Returns the ids transitioned.
        """
        skip = set(exclude)
        with immediate(self.conn):
            rows = self.conn.execute(
                """
                SELECT id FROM tasks
                WHERE state = ?
                  AND lease_expires_at IS NOT NULL
                  AND lease_expires_at <= ?;
                """,
                (TaskState.ACTIVE.value, now_ms),
            ).fetchall()
            ids = [r["id"] for r in rows if r["id"] not in skip]
            if not ids:
                return []

            self.conn.execute(
                f"""
                UPDATE tasks
                SET state = ?,
                    success = 0,
                    error = ?,
                    finished_at = ?,
                    expires_at = ?,
                    lease_expires_at = NULL,
                    updated_at = ?
                WHERE id IN ({_placeholders(ids)})
                  AND state = ?;
                """,
                (
                    TaskState.FAILED.value,
                    error,
                    now_ms,
                    now_ms + retention_ms,
                    now_ms,
                    *ids,
                    TaskState.ACTIVE.value,
                ),
            )
        return ids

    def delete_expired(self, task_ids: Sequence[str], now_ms: int) -> int:
        """Deletes the given rows if they are still terminal and expired."""
        if not task_ids:
            return 0
        with immediate(self.conn):
            return self.conn.execute(
                f"""
                DELETE FROM tasks
                WHERE id IN ({_placeholders(task_ids)})
                  AND state IN ({_placeholders(_TERMINAL_STATES)})
                  AND expires_at IS NOT NULL
                  AND expires_at <= ?;
                """,
                (*task_ids, *_TERMINAL_STATES, now_ms),
            ).rowcount


@contextmanager
def open_repo(db: SQLiteDB) -> Iterator[TaskRepo]:
    """TaskRepo on a fresh connection that is closed on exit."""
    with db.session() as conn:
        yield TaskRepo(conn)


def _row_to_record(row: sqlite3.Row) -> TaskRecord:
    spec = TaskSpec(
        id=row["id"],
        kind=BuildKind(row["kind"]),
        name=row["name"],
        input_ref=row["input_ref"],
        output_dir=row["output_dir"],
        created_at=row["created_at"],
        options=json.loads(row["options"] or "{}"),
    )
    result = None
    if row["success"] is not None:
        result = BuildResult(
            success=bool(row["success"]),
            artifact_path=row["artifact_path"],
            error=row["error"],
            duration_ms=row["duration_ms"],
        )
    return TaskRecord(
        seq=row["seq"],
        spec=spec,
        state=TaskState(row["state"]),
        progress=Progress(message=row["progress_message"], percent=row["progress_percent"]),
        result=result,
        queued_at=row["queued_at"],
        updated_at=row["updated_at"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        expires_at=row["expires_at"],
        lease_expires_at=row["lease_expires_at"],
    )
