# src/btq/engine/worker.py
from __future__ import annotations

import sqlite3
import time
from typing import Optional

from btq.builders.base import Builder, coerce_result
from btq.domain.models import BuildResult, TaskSpec
from btq.domain.states import TaskState
from btq.logging import get_logger, task_logger

from .heartbeat import Heartbeat, ProgressRatchet
from .lifecycle import LifecycleTracker

_LOG = get_logger(__name__)


def describe_exception(e: BaseException) -> str:
    text = str(e).strip()
    return f"{type(e).__name__}: {text}" if text else type(e).__name__


class Worker:
    """
    Runs the Builder for one claimed (ACTIVE) task and records the outcome.

    Whatever the Builder does, the task leaves ACTIVE: a failure result and an
    exception both end in FAILED with a non-empty error.
    """

    def __init__(self, tracker: LifecycleTracker, builder: Builder, heartbeat: Heartbeat) -> None:
        self._tracker = tracker
        self._builder = builder
        self._heartbeat = heartbeat

    def run(self, spec: TaskSpec) -> TaskState:
        log = task_logger(_LOG, spec.id, spec.name)
        state = self._tracker.current_state(spec.id)
        if state is not TaskState.ACTIVE:
            # Failed by recovery (or otherwise moved on) before this worker got to it.
            log.warning("Task is %s; build skipped", state)
            return state

        log.info("Build started (%s)", spec.kind)

        ratchet = ProgressRatchet(spec.id, lambda message, percent: self._write_progress(spec.id, message, percent))
        self._heartbeat.register(ratchet)

        start = time.monotonic()
        try:
            result = coerce_result(self._builder(spec, ratchet.report))
        except Exception as e:
            log.exception("Build raised")
            result = BuildResult(success=False, error=describe_exception(e))
        finally:
            self._heartbeat.unregister(spec.id)

        duration_ms = int((time.monotonic() - start) * 1000)
        if result.duration_ms is None:
            result = result.model_copy(update={"duration_ms": duration_ms})

        state = self._tracker.finish(spec.id, result)
        if state is TaskState.COMPLETED:
            log.info("Build completed in %dms: %s", duration_ms, result.artifact_path)
        else:
            log.warning("Build failed after %dms: %s", duration_ms, result.error)
        return state

    def _write_progress(self, task_id: str, message: str, percent: int) -> Optional[bool]:
        try:
            return self._tracker.record_progress(task_id, message, percent)
        except sqlite3.Error as e:
            # A lost progress write must not fail the build; the next one overwrites it.
            _LOG.warning("Could not record progress for %s: %r", task_id, e)
            return None
