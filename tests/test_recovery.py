# tests/test_recovery.py
import sqlite3
import time
from pathlib import Path

from btq.domain.states import TaskState
from btq.engine import LifecycleTracker, PoolConfig, TaskQueue, WorkerPool
from btq.engine.heartbeat import Heartbeat
from btq.engine.recovery import LEASE_EXPIRED_ERROR, run_recovery
from btq.engine.worker import Worker
from btq.storage import SQLiteDB, apply_migrations, open_repo

from conftest import GatedBuilder, make_spec, now_ms, wait_until


def _stale_active(db: SQLiteDB, task_id: str) -> None:
    """ACTIVE row left behind by a process that died an hour ago."""
    TaskQueue(db).enqueue(make_spec(task_id))
    with open_repo(db) as repo:
        repo.claim_pending(now_ms=now_ms() - 3_600_000, lease_ms=60_000, limit=1)


def test_recovery_fails_expired_leases(db):
    _stale_active(db, "stale-task")

    assert run_recovery(db, retention_ms=60_000) == ["stale-task"]

    record = TaskQueue(db).get("stale-task")
    assert record.state == TaskState.FAILED
    assert record.result.success is False
    assert record.result.error == LEASE_EXPIRED_ERROR
    assert record.lease_expires_at is None
    assert record.expires_at == record.finished_at + 60_000

    # Idempotent
    assert run_recovery(db, retention_ms=60_000) == []


def test_recovery_leaves_live_leases_alone(db):
    queue = TaskQueue(db)
    queue.enqueue(make_spec("alive"))
    with open_repo(db) as repo:
        repo.claim_pending(now_ms=now_ms(), lease_ms=60_000, limit=1)

    assert run_recovery(db, retention_ms=60_000) == []
    assert queue.get("alive").state == TaskState.ACTIVE


def test_pool_start_fails_stale_tasks_without_running_them(tmp_path: Path):
    db = SQLiteDB(tmp_path / "tasks.db")
    with db.session() as conn:
        apply_migrations(conn)
    _stale_active(db, "stale-task")
    TaskQueue(db).enqueue(make_spec("fresh-task", output_dir=str(tmp_path / "builds")))

    builder = GatedBuilder()
    finished = []
    pool = WorkerPool(
        db,
        builder,
        PoolConfig(max_concurrent_tasks=1, sched_tick_ms=20, lease_ms=5_000, heartbeat_ms=100),
        on_task_finished=finished.append,
    )
    pool.start()
    try:
        # The stale row no longer holds the only slot.
        assert builder.wait_started("fresh-task")
        builder.release("fresh-task")
        assert wait_until(lambda: TaskQueue(db).get("fresh-task").state == TaskState.COMPLETED)
        time.sleep(0.1)
    finally:
        pool.stop()

    assert builder.calls == ["fresh-task"]
    assert TaskQueue(db).get("stale-task").state == TaskState.FAILED
    assert finished[0] == "stale-task"


def test_recovery_skips_builds_this_process_is_running(db):
    _stale_active(db, "mine")
    _stale_active(db, "orphan")

    assert run_recovery(db, retention_ms=60_000, running=["mine"]) == ["orphan"]
    assert TaskQueue(db).get("mine").state == TaskState.ACTIVE
    assert TaskQueue(db).get("orphan").state == TaskState.FAILED


def test_missed_lease_renewals_do_not_fail_a_running_build(db, tmp_path: Path, monkeypatch):
    queue = TaskQueue(db)
    queue.enqueue(make_spec("slow", output_dir=str(tmp_path / "builds")))

    builder = GatedBuilder()
    pool = WorkerPool(
        db,
        builder,
        PoolConfig(
            max_concurrent_tasks=1,
            sched_tick_ms=20,
            lease_ms=400,
            heartbeat_ms=100,
            recovery_interval_ms=50,
        ),
    )

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(pool.tracker, "renew_leases", locked)
    pool.start()
    try:
        assert builder.wait_started("slow")
        # Several lease lengths and recovery passes go by without a renewal.
        time.sleep(1.0)
        assert queue.get("slow").state == TaskState.ACTIVE

        builder.release("slow")
        assert wait_until(lambda: queue.get("slow").state == TaskState.COMPLETED)
    finally:
        pool.stop()

    record = queue.get("slow")
    assert record.result.success is True
    assert record.result.error is None


def test_worker_does_not_build_a_task_that_is_no_longer_active(db):
    _stale_active(db, "gone-stale")
    spec = TaskQueue(db).get("gone-stale").spec
    run_recovery(db, retention_ms=60_000)

    tracker = LifecycleTracker(db, retention_ms=60_000)
    builder = GatedBuilder()
    worker = Worker(tracker, builder, Heartbeat(tracker, interval_ms=100, lease_ms=1_000))

    assert worker.run(spec) == TaskState.FAILED
    assert builder.calls == []
    assert TaskQueue(db).get("gone-stale").result.error == LEASE_EXPIRED_ERROR
