# src/btq/engine/scheduler.py
from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from btq.builders.base import Builder
from btq.domain.states import TaskState
from btq.logging import get_logger
from btq.storage import SQLiteDB, TaskRepo

from .heartbeat import Heartbeat
from .lifecycle import LifecycleTracker
from .recovery import run_recovery
from .worker import Worker

_LOG = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PoolConfig:
    """
    Runtime config for the worker pool.
    """
    max_concurrent_tasks: int = 2
    sched_tick_ms: int = 200
    lease_ms: int = 60_000
    heartbeat_ms: int = 5_000
    retention_ms: int = 2 * 3_600_000

    # How often to look for ACTIVE tasks orphaned by a dead process (ms)
    recovery_interval_ms: int = 5_000


class WorkerPool:
    """
    Scheduler loop + executor:
    - Periodically runs recovery (expired leases of tasks it does not own -> FAILED)
    - Computes free slots from DB truth (count of ACTIVE rows)
    - Atomically claims the oldest PENDING tasks up to the free slots
    - Runs each claimed task's Builder on a thread pool of the same size

    The loop wakes early on `wake()` (new submission, finished task) so a slot
    freed by a finishing build is refilled without waiting for the next tick.
    """

    def __init__(
        self,
        db: SQLiteDB,
        builder: Builder,
        cfg: PoolConfig,
        *,
        on_task_finished: Optional[Callable[[str], None]] = None,
    ) -> None:
        if cfg.max_concurrent_tasks <= 0:
            raise ValueError("max_concurrent_tasks must be > 0")
        if cfg.sched_tick_ms <= 0:
            raise ValueError("sched_tick_ms must be > 0")
        if cfg.heartbeat_ms >= cfg.lease_ms:
            raise ValueError("heartbeat_ms must be smaller than lease_ms")

        self._db = db
        self._cfg = cfg
        self._on_task_finished = on_task_finished

        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._executor = ThreadPoolExecutor(
            max_workers=cfg.max_concurrent_tasks,
            thread_name_prefix="btq-worker",
        )

        self.tracker = LifecycleTracker(db, retention_ms=cfg.retention_ms)
        self._heartbeat = Heartbeat(self.tracker, interval_ms=cfg.heartbeat_ms, lease_ms=cfg.lease_ms)
        self._worker = Worker(self.tracker, builder, self._heartbeat)

        self._inflight: set[str] = set()
        self._inflight_lock = threading.Lock()

    @property
    def inflight(self) -> set[str]:
        with self._inflight_lock:
            return set(self._inflight)

    def start(self) -> None:
        """
        Starts the scheduler and heartbeat threads.
        Safe to call once.
        """
        if self._thread and self._thread.is_alive():
            return

        _LOG.info(
            "Starting worker pool: max_concurrent=%d tick_ms=%d lease_ms=%d heartbeat_ms=%d",
            self._cfg.max_concurrent_tasks,
            self._cfg.sched_tick_ms,
            self._cfg.lease_ms,
            self._cfg.heartbeat_ms,
        )
        self._stop.clear()

        # Fail whatever a previous process left ACTIVE before claiming new work.
        self._recover()

        self._heartbeat.start()
        self._thread = threading.Thread(target=self._run_loop, name="btq-scheduler", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        """
        Stops claiming new work and shuts down the executor.

        In-flight builds are not interrupted; they finish and record their result.
        """
        _LOG.info("Stopping worker pool...")
        self._stop.set()
        self._wake.set()

        if self._thread:
            self._thread.join(timeout=timeout_s)

        self._executor.shutdown(wait=False, cancel_futures=False)
        self._heartbeat.stop(timeout_s=timeout_s)
        _LOG.info("Worker pool stopped.")

    def wake(self) -> None:
        self._wake.set()

    def _run_loop(self) -> None:
        last_recovery = now_ms()

        # Dedicated connection for the scheduler loop thread.
        conn = self._db.connect()
        repo = TaskRepo(conn)

        try:
            while not self._stop.is_set():
                t0 = now_ms()

                if (t0 - last_recovery) >= self._cfg.recovery_interval_ms:
                    try:
                        self._recover()
                    except Exception:
                        _LOG.exception("Recovery pass failed (continuing).")
                    last_recovery = t0

                try:
                    self._claim_and_dispatch(repo)
                except Exception:
                    _LOG.exception("Scheduler iteration failed (continuing).")

                elapsed = now_ms() - t0
                sleep_s = max(0.0, (self._cfg.sched_tick_ms - elapsed) / 1000.0)
                self._wake.wait(timeout=sleep_s)
                self._wake.clear()

        finally:
            conn.close()

    def _claim_and_dispatch(self, repo: TaskRepo) -> None:
        # Slots come from the store, not from the executor: the ACTIVE count is
        # read inside the claim transaction, so neither a restarted process nor
        # a second pool on the same store can push past the limit.
        limit = self._cfg.max_concurrent_tasks
        claimed = repo.claim_pending(
            now_ms=now_ms(), lease_ms=self._cfg.lease_ms, limit=limit, max_active=limit
        )
        if not claimed:
            return

        for spec in claimed:
            with self._inflight_lock:
                self._inflight.add(spec.id)
            fut = self._executor.submit(self._worker.run, spec)
            fut.add_done_callback(self._on_job_done(spec.id))

        _LOG.info(
            "Claimed %d task(s) [%s]; pending=%d",
            len(claimed),
            ", ".join(s.id for s in claimed),
            repo.count_pending(),
        )

    def _recover(self) -> None:
        for task_id in run_recovery(self._db, retention_ms=self._cfg.retention_ms, running=self.inflight):
            self._notify_finished(task_id)

    def _on_job_done(self, task_id: str):
        def _cb(fut: Future[TaskState]) -> None:
            with self._inflight_lock:
                self._inflight.discard(task_id)
            try:
                fut.result()
            except Exception as e:
                # Worker normalizes Builder errors; reaching here means the
                # final transition itself failed.
                _LOG.exception("Task %s could not be finalized: %r", task_id, e)
            self.wake()
            self._notify_finished(task_id)

        return _cb

    def _notify_finished(self, task_id: str) -> None:
        if self._on_task_finished is None:
            return
        try:
            self._on_task_finished(task_id)
        except Exception:
            _LOG.exception("Post-completion hook failed for task %s (continuing).", task_id)
