# tests/conftest.py
import itertools
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest
from fastapi.testclient import TestClient

from btq.api.app import create_app
from btq.artifacts import artifact_path
from btq.domain.models import BuildResult, TaskSpec
from btq.domain.states import BuildKind
from btq.storage import SQLiteDB, apply_migrations

_counter = itertools.count(1)

DEFAULT_ENV = {
    "BTQ_MAX_CONCURRENT": "2",
    "BTQ_SCHED_TICK_MS": "50",
    "BTQ_LEASE_MS": "2000",
    "BTQ_HEARTBEAT_MS": "200",
    "BTQ_RETENTION_MS": "3600000",
    "BTQ_SWEEP_INTERVAL_MS": "3600000",
    "BTQ_MOCK_STEP_MS": "20",
    "BTQ_LOG_LEVEL": "warning",
}


def now_ms() -> int:
    return int(time.time() * 1000)


def wait_until(fn: Callable[[], bool], timeout_s: float = 5.0, poll_s: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if fn():
            return True
        time.sleep(poll_s)
    return False


def make_spec(task_id: str, *, name: str = "MyApp", output_dir: str = "/tmp/btq-test", **kw) -> TaskSpec:
    return TaskSpec(
        id=task_id,
        kind=kw.pop("kind", BuildKind.HTML),
        name=name,
        input_ref=kw.pop("input_ref", f"uploads/{task_id}.html"),
        output_dir=output_dir,
        created_at=kw.pop("created_at", now_ms()),
        **kw,
    )


class GatedBuilder:
    """
    Builder whose builds block until the test releases them.
    Records every invocation so tests can count executions per id.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.started: dict[str, threading.Event] = {}
        self._gates: dict[str, threading.Event] = {}
        self._outcomes: dict[str, object] = {}
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def _gate(self, task_id: str) -> threading.Event:
        with self._lock:
            return self._gates.setdefault(task_id, threading.Event())

    def _started(self, task_id: str) -> threading.Event:
        with self._lock:
            return self.started.setdefault(task_id, threading.Event())

    def release(self, task_id: str, outcome: object = None) -> None:
        with self._lock:
            if outcome is not None:
                self._outcomes[task_id] = outcome
        self._gate(task_id).set()

    def wait_started(self, task_id: str, timeout_s: float = 5.0) -> bool:
        return self._started(task_id).wait(timeout_s)

    def __call__(self, spec: TaskSpec, progress) -> BuildResult:
        with self._lock:
            self.calls.append(spec.id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            progress("Building...", 10)
            self._started(spec.id).set()
            self._gate(spec.id).wait(10)
            outcome = self._outcomes.get(spec.id)
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, BuildResult):
                return outcome
            dest = artifact_path(spec.output_dir, spec.name, spec.id, "apk")
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(spec.id, encoding="utf-8")
            return BuildResult(success=True, artifact_path=str(dest))
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture()
def db(tmp_path: Path) -> SQLiteDB:
    """Fresh migrated queue store."""
    db = SQLiteDB(tmp_path / "tasks.db")
    with db.session() as conn:
        apply_migrations(conn)
    return db


def _apply_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, db_path: Path,
               overrides: Optional[dict[str, str]] = None) -> None:
    monkeypatch.setenv("BTQ_DB_PATH", str(db_path))
    monkeypatch.setenv("BTQ_BUILDS_DIR", str(tmp_path / "builds"))
    monkeypatch.setenv("BTQ_UPLOADS_DIR", str(tmp_path / "uploads"))
    for k, v in DEFAULT_ENV.items():
        monkeypatch.setenv(k, v)
    if overrides:
        for k, v in overrides.items():
            monkeypatch.setenv(k, v)


@contextmanager
def _client_ctx(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, *, overrides: Optional[dict[str, str]] = None,
                db_path: Optional[Path] = None, builder=None) -> Iterator[TestClient]:
    # Unique DB per client instance unless one is provided
    if db_path is None:
        db_path = tmp_path / f"tasks_{next(_counter)}.db"

    _apply_env(monkeypatch, tmp_path, db_path, overrides)

    with TestClient(create_app(builder=builder)) as client:
        yield client


@pytest.fixture()
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    """
    Default integration test client.
    Uses DEFAULT_ENV, the mock builder and a fresh sqlite db per test.
    """
    with _client_ctx(monkeypatch, tmp_path) as c:
        yield c


@pytest.fixture()
def client_factory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """
    Factory for tests that need custom settings, a pre-populated DB or their
    own builder.

    Usage:
      with client_factory(overrides={"BTQ_MAX_CONCURRENT": "1"}, builder=b) as client:
          ...
    """

    def _make(*, overrides: Optional[dict[str, str]] = None, db_path: Optional[Path] = None, builder=None):
        return _client_ctx(monkeypatch, tmp_path, overrides=overrides, db_path=db_path, builder=builder)

    return _make
