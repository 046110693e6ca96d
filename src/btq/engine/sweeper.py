# src/btq/engine/sweeper.py
from __future__ import annotations

import shutil
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional

from btq.artifacts import task_id_from_path
from btq.logging import get_logger
from btq.storage import SQLiteDB, TaskRepo, open_repo

_LOG = get_logger(__name__)

_MAX_REPORTED_ITEMS = 10


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SweepReport:
    removed_builds: int = 0
    removed_uploads: int = 0
    removed_records: int = 0
    kept_in_flight: int = 0
    errors: int = 0
    items: list[str] = field(default_factory=list)

    @property
    def removed(self) -> int:
        return self.removed_builds + self.removed_uploads + self.removed_records

    def count_removed(self, label: str, name: str) -> None:
        if label == "builds":
            self.removed_builds += 1
        else:
            self.removed_uploads += 1
        if len(self.items) < _MAX_REPORTED_ITEMS:
            self.items.append(f"{label}/{name}")


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


class RetentionSweeper:
    """
    Garbage collector for build outputs, staged uploads and expired records.

    A pass deletes, for each entry of the builds and uploads directories:
    - entries of tasks whose record expired (finished_at + retention passed)
    - anything older than the retention window (by mtime), including orphans
      whose name maps to no task
    but never an entry whose task is still PENDING or ACTIVE. Expired records
    are deleted after their files.

    Passes run on a fixed interval, once at startup, and again whenever a task
    finishes. One entry failing to stat/delete is logged and skipped.
    """

    def __init__(
        self,
        db: SQLiteDB,
        *,
        builds_dir: Path,
        uploads_dir: Path,
        retention_ms: int,
        interval_ms: int,
        enabled: bool = True,
        cleanup_uploads_on_complete: bool = True,
    ) -> None:
        self._db = db
        self.builds_dir = Path(builds_dir)
        self.uploads_dir = Path(uploads_dir)
        self.retention_ms = retention_ms
        self._interval_s = interval_ms / 1000.0
        self.enabled = enabled
        self.cleanup_uploads_on_complete = cleanup_uploads_on_complete

        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------
    # Thread lifecycle
    # -------------------------

    def start(self) -> None:
        if not self.enabled:
            _LOG.warning(
                "File cleanup DISABLED; build outputs are kept (retention_ms=%d)", self.retention_ms
            )
            return
        if self._thread and self._thread.is_alive():
            return

        _LOG.info(
            "Starting retention sweeper: retention_ms=%d interval_s=%.1f builds=%s uploads=%s",
            self.retention_ms,
            self._interval_s,
            self.builds_dir,
            self.uploads_dir,
        )
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="btq-sweeper", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout_s)

    def request_sweep(self) -> None:
        """Asks the sweeper thread for a pass now instead of at the next interval."""
        self._wake.set()

    def on_task_finished(self, task_id: str) -> None:
        """Hook for the worker pool, called after a task reaches COMPLETED/FAILED."""
        if self.cleanup_uploads_on_complete:
            self.cleanup_task_uploads(task_id)
        if self.enabled:
            self.request_sweep()

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.sweep()
            except Exception:
                _LOG.exception("Sweep pass failed (continuing).")
            self._wake.wait(timeout=self._interval_s)
            self._wake.clear()

    # -------------------------
    # Passes
    # -------------------------

    def sweep(self, now: Optional[int] = None) -> SweepReport:
        now = now_ms() if now is None else now
        report = SweepReport()

        with self._sweep_lock, open_repo(self._db) as repo:
            expired = repo.list_expired(now)
            expired_ids = {r.id for r in expired}

            for label, root in self._targets():
                for entry in self._entries(root, report):
                    self._sweep_entry(repo, entry, label, now, expired_ids, report)

            for record in expired:
                path = record.result.artifact_path if record.result else None
                if path and self._delete(Path(path), report):
                    report.count_removed("builds", Path(path).name)

            if expired_ids:
                report.removed_records = repo.delete_expired(sorted(expired_ids), now)

        if report.removed or report.errors:
            _LOG.info(
                "Cleanup completed: builds=%d uploads=%d records=%d kept_in_flight=%d errors=%d items=%s",
                report.removed_builds,
                report.removed_uploads,
                report.removed_records,
                report.kept_in_flight,
                report.errors,
                report.items,
            )
        return report

    def cleanup_task_uploads(self, task_id: str) -> int:
        """Removes the staged uploads of one finished task."""
        report = SweepReport()
        with self._sweep_lock:
            for entry in self._entries(self.uploads_dir, report):
                if task_id_from_path(entry) == task_id and self._delete(entry, report):
                    report.count_removed("uploads", entry.name)
        if report.removed_uploads:
            _LOG.info("Removed %d staged upload(s) of task %s", report.removed_uploads, task_id)
        return report.removed_uploads

    def purge_task(self, task_id: str, extra_paths: Iterable[str] = ()) -> int:
        """
        Removes every file of a task whose record was just removed (cancel).
        The caller guarantees the task is not ACTIVE.
        """
        report = SweepReport()
        with self._sweep_lock:
            for label, root in self._targets():
                for entry in self._entries(root, report):
                    if task_id_from_path(entry) == task_id and self._delete(entry, report):
                        report.count_removed(label, entry.name)
            for raw in extra_paths:
                path = Path(raw)
                if self._delete(path, report):
                    report.count_removed("builds", path.name)
        if report.removed:
            _LOG.info("Purged %d file(s) of task %s", report.removed, task_id)
        return report.removed

    # -------------------------
    # Helpers
    # -------------------------

    def _targets(self) -> list[tuple[str, Path]]:
        return [("builds", self.builds_dir), ("uploads", self.uploads_dir)]

    def _entries(self, root: Path, report: SweepReport) -> Iterator[Path]:
        if not root.exists():
            return iter(())
        try:
            return iter(sorted(root.iterdir()))
        except OSError as e:
            report.errors += 1
            _LOG.warning("Cannot list %s: %s", root, e)
            return iter(())

    def _sweep_entry(
        self,
        repo: TaskRepo,
        entry: Path,
        label: str,
        now: int,
        expired_ids: set[str],
        report: SweepReport,
    ) -> None:
        try:
            task_id = task_id_from_path(entry)
            if task_id is not None and task_id in expired_ids:
                due = True
            else:
                if task_id is not None:
                    state = repo.get_state(task_id)
                    if state is not None and not state.is_terminal:
                        report.kept_in_flight += 1
                        return
                age = now - int(entry.lstat().st_mtime * 1000)
                due = age > self.retention_ms

            if due:
                _remove(entry)
                report.count_removed(label, entry.name)
        except (OSError, sqlite3.Error) as e:
            report.errors += 1
            _LOG.warning("Sweep skipped %s/%s: %s", label, entry.name, e)

    def _delete(self, path: Path, report: SweepReport) -> bool:
        try:
            if not path.exists() and not path.is_symlink():
                return False
            _remove(path)
            return True
        except OSError as e:
            report.errors += 1
            _LOG.warning("Could not remove %s: %s", path, e)
            return False
