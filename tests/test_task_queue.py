# tests/test_task_queue.py
import pytest

from btq.domain.errors import InvalidTransitionError, NotFoundError
from btq.domain.models import BuildResult
from btq.domain.states import TaskState
from btq.engine import LifecycleTracker, TaskQueue
from btq.storage import open_repo

from conftest import make_spec, now_ms


def _claim(db, limit=1):
    with open_repo(db) as repo:
        return repo.claim_pending(now_ms=now_ms(), lease_ms=10_000, limit=limit)


def test_enqueue_is_idempotent_on_task_id(db):
    queue = TaskQueue(db)

    first, created1 = queue.enqueue(make_spec("dup-1", name="First"))
    second, created2 = queue.enqueue(make_spec("dup-1", name="Second"))

    assert created1 is True
    assert created2 is False
    assert second.spec.name == "First"
    assert second.seq == first.seq
    assert queue.list()[1] == 1


def test_resubmitting_an_active_task_returns_it_unchanged(db):
    queue = TaskQueue(db)
    queue.enqueue(make_spec("running-1"))
    _claim(db)

    record, created = queue.enqueue(make_spec("running-1"))
    assert created is False
    assert record.state == TaskState.ACTIVE


def test_get_unknown_task_raises_not_found(db):
    with pytest.raises(NotFoundError):
        TaskQueue(db).get("nope")


def test_new_record_is_pending_with_queued_at(db):
    before = now_ms()
    record, _ = TaskQueue(db).enqueue(make_spec("fresh"))
    assert record.state == TaskState.PENDING
    assert record.queued_at >= before
    assert record.started_at is None
    assert record.expires_at is None
    assert record.progress.percent == 0


def test_positions_follow_enqueue_order_and_recompute(db):
    queue = TaskQueue(db)
    for i in range(1, 5):
        queue.enqueue(make_spec(f"t{i}"))

    assert queue.peek_position("t1").model_dump() == {"position": 1, "total": 4}
    assert queue.peek_position("t3").model_dump() == {"position": 3, "total": 4}

    # Removing a pending task shifts everyone behind it.
    assert queue.remove("t2") is True
    assert queue.peek_position("t3").model_dump() == {"position": 2, "total": 3}

    # Claiming the head shifts the rest again; the claimed one has no position.
    claimed = _claim(db)
    assert [s.id for s in claimed] == ["t1"]
    assert queue.peek_position("t1") is None
    assert queue.peek_position("t3").model_dump() == {"position": 1, "total": 2}
    assert queue.peek_position("t4").model_dump() == {"position": 2, "total": 2}


def test_peek_position_for_unknown_task_is_none(db):
    assert TaskQueue(db).peek_position("ghost") is None


def test_claim_is_fifo_and_bounded(db):
    queue = TaskQueue(db)
    for i in range(5):
        queue.enqueue(make_spec(f"task-{i}"))

    assert [s.id for s in _claim(db, limit=3)] == ["task-0", "task-1", "task-2"]
    assert [s.id for s in _claim(db, limit=3)] == ["task-3", "task-4"]
    assert _claim(db, limit=3) == []

    with open_repo(db) as repo:
        assert repo.count_active() == 5
        assert repo.count_pending() == 0


def test_remove_refuses_active_task_without_side_effects(db):
    queue = TaskQueue(db)
    tracker = LifecycleTracker(db, retention_ms=60_000)
    queue.enqueue(make_spec("busy"))
    _claim(db)
    tracker.record_progress("busy", "Compiling", 40)

    before = queue.get("busy")
    assert queue.remove("busy") is False
    after = queue.get("busy")

    assert after.state == TaskState.ACTIVE
    assert after.progress == before.progress
    assert after.result is None


def test_remove_finished_task_deletes_record(db):
    queue = TaskQueue(db)
    tracker = LifecycleTracker(db, retention_ms=60_000)
    queue.enqueue(make_spec("done"))
    _claim(db)
    tracker.finish("done", BuildResult(success=True, artifact_path="/tmp/x.apk"))

    assert queue.remove("done") is True
    with pytest.raises(NotFoundError):
        queue.get("done")


def test_remove_unknown_task_raises_not_found(db):
    with pytest.raises(NotFoundError):
        TaskQueue(db).remove("missing")


def test_progress_percent_never_decreases(db):
    queue = TaskQueue(db)
    tracker = LifecycleTracker(db, retention_ms=60_000)
    queue.enqueue(make_spec("p1"))
    _claim(db)

    assert tracker.record_progress("p1", "Installing dependencies...", 25)
    assert tracker.record_progress("p1", "Late, lower report", 15)
    progress = tracker.current_progress("p1")
    assert progress.percent == 25
    assert progress.message == "Late, lower report"

    tracker.record_progress("p1", "Way over", 250)
    assert tracker.current_progress("p1").percent == 100


def test_progress_is_ignored_once_task_is_not_active(db):
    queue = TaskQueue(db)
    tracker = LifecycleTracker(db, retention_ms=60_000)
    queue.enqueue(make_spec("p2"))

    # Still pending
    assert tracker.record_progress("p2", "too early", 50) is False
    assert tracker.current_progress("p2").percent == 0


def test_finish_stamps_expiry_and_is_one_way(db):
    queue = TaskQueue(db)
    tracker = LifecycleTracker(db, retention_ms=60_000)
    queue.enqueue(make_spec("f1"))
    _claim(db)

    state = tracker.finish("f1", BuildResult(success=False, error="gradle exploded"))
    assert state == TaskState.FAILED

    record = queue.get("f1")
    assert record.finished_at is not None
    assert record.expires_at == record.finished_at + 60_000
    assert record.lease_expires_at is None
    assert tracker.current_result("f1").error == "gradle exploded"

    with pytest.raises(InvalidTransitionError):
        tracker.finish("f1", BuildResult(success=True, artifact_path="/tmp/late.apk"))
    assert tracker.current_state("f1") == TaskState.FAILED


def test_finish_on_pending_task_is_rejected(db):
    queue = TaskQueue(db)
    tracker = LifecycleTracker(db, retention_ms=60_000)
    queue.enqueue(make_spec("never-claimed"))

    with pytest.raises(InvalidTransitionError):
        tracker.finish("never-claimed", BuildResult(success=True))
    assert tracker.current_state("never-claimed") == TaskState.PENDING


def test_complete_and_fail_shortcuts(db):
    queue = TaskQueue(db)
    tracker = LifecycleTracker(db, retention_ms=60_000)
    queue.enqueue(make_spec("ok"))
    queue.enqueue(make_spec("ko"))
    _claim(db, limit=2)

    assert tracker.complete("ok", "/out/MyApp--ok.apk", duration_ms=12) == TaskState.COMPLETED
    assert tracker.fail("ko", "") == TaskState.FAILED

    ok = tracker.record("ok")
    assert ok.progress.percent == 100
    assert ok.result.artifact_path == "/out/MyApp--ok.apk"
    assert ok.result.duration_ms == 12
    assert tracker.current_result("ko").error == "Build failed"

    with pytest.raises(InvalidTransitionError):
        tracker.fail("ok", "too late")
    with pytest.raises(NotFoundError):
        tracker.complete("ghost", None)


def test_two_claimers_sharing_the_store_respect_the_slot_limit(db):
    queue = TaskQueue(db)
    for i in range(3):
        queue.enqueue(make_spec(f"shared-{i}"))

    with open_repo(db) as a, open_repo(db) as b:
        # Both pools see one free slot before either claims.
        slots_a = 1 - a.count_active()
        slots_b = 1 - b.count_active()
        assert slots_a == slots_b == 1

        claimed_a = a.claim_pending(now_ms=now_ms(), lease_ms=10_000, limit=slots_a, max_active=1)
        claimed_b = b.claim_pending(now_ms=now_ms(), lease_ms=10_000, limit=slots_b, max_active=1)

        assert [s.id for s in claimed_a] == ["shared-0"]
        assert claimed_b == []
        assert a.count_active() == 1
        assert b.count_pending() == 2


def test_claim_tops_up_to_max_active(db):
    queue = TaskQueue(db)
    for i in range(4):
        queue.enqueue(make_spec(f"top-{i}"))
    _claim(db)

    with open_repo(db) as repo:
        claimed = repo.claim_pending(now_ms=now_ms(), lease_ms=10_000, limit=10, max_active=3)
        assert [s.id for s in claimed] == ["top-1", "top-2"]
        assert repo.count_active() == 3
