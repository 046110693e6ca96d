# src/btq/engine/heartbeat.py
from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Sequence

from btq.logging import get_logger

from .lifecycle import LifecycleTracker, clamp_percent

_LOG = get_logger(__name__)

# Percent values real builders tend to report; a synthesized value always stays
# below the next one of these above the last real report.
DEFAULT_MILESTONES: tuple[int, ...] = (5, 10, 15, 20, 25, 40, 55, 60, 65, 70, 75, 80, 90, 95, 100)


def next_milestone(percent: int, milestones: Sequence[int] = DEFAULT_MILESTONES) -> Optional[int]:
    for m in milestones:
        if m > percent:
            return m
    return None


def synthesize(last_reported: int, current: int, milestones: Sequence[int] = DEFAULT_MILESTONES) -> int:
    """
    Next synthesized percent: a step from `current` towards the next milestone
    above `last_reported`, never reaching it. Returns `current` when there is
    no room left.
    """
    milestone = next_milestone(last_reported, milestones)
    if milestone is None:
        return current
    ceiling = milestone - 1
    if current >= ceiling:
        return current
    step = max(1, (ceiling - current) // 3)
    return min(ceiling, current + step)


class ProgressRatchet:
    """
    Per-task progress channel shared by the Builder and the heartbeat.

    Both sides publish through the same lock and the value written is always
    max(previous, new), so a poller never sees percent go down.
    """

    def __init__(
        self,
        task_id: str,
        write: Callable[[str, int], None],
        *,
        milestones: Sequence[int] = DEFAULT_MILESTONES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.task_id = task_id
        self._write = write
        self._milestones = tuple(milestones)
        self._clock = clock
        self._lock = threading.Lock()

        self._message = ""
        self._last_reported = 0
        self._current = 0
        self._last_report_at = clock()

    @property
    def percent(self) -> int:
        return self._current

    @property
    def message(self) -> str:
        return self._message

    def report(self, message: str, percent: Optional[float] = None) -> None:
        """Progress sink handed to the Builder."""
        with self._lock:
            if percent is not None:
                value = clamp_percent(percent)
                self._last_reported = max(self._last_reported, value)
                self._current = max(self._current, value)
            self._message = message
            self._last_report_at = self._clock()
            self._write(self._message, self._current)

    def pulse(self, stale_after_s: float) -> Optional[int]:
        """
        Publishes a synthesized value if the Builder has been silent for longer
        than stale_after_s. Returns the value published, or None.
        """
        with self._lock:
            if self._clock() - self._last_report_at < stale_after_s:
                return None
            value = synthesize(self._last_reported, self._current, self._milestones)
            if value <= self._current:
                return None
            self._current = value
            self._write(self._message, self._current)
            return value


class Heartbeat:
    """
    Background ticker over in-flight tasks:
    - renews the worker lease of every registered task
    - pulses each task's ratchet so silent builds still show movement
    """

    def __init__(self, tracker: LifecycleTracker, *, interval_ms: int, lease_ms: int) -> None:
        self._tracker = tracker
        self._interval_s = interval_ms / 1000.0
        self._lease_ms = lease_ms

        self._ratchets: dict[str, ProgressRatchet] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register(self, ratchet: ProgressRatchet) -> None:
        with self._lock:
            self._ratchets[ratchet.task_id] = ratchet

    def unregister(self, task_id: str) -> None:
        with self._lock:
            self._ratchets.pop(task_id, None)

    def tracked(self) -> list[str]:
        with self._lock:
            return list(self._ratchets)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="btq-heartbeat", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout_s)

    def tick(self) -> None:
        with self._lock:
            ratchets = list(self._ratchets.values())
        if not ratchets:
            return

        self._tracker.renew_leases([r.task_id for r in ratchets], self._lease_ms)
        for r in ratchets:
            value = r.pulse(self._interval_s)
            if value is not None:
                _LOG.debug("Heartbeat progress for %s: %d%%", r.task_id, value)

    def _run_loop(self) -> None:
        while not self._stop.wait(timeout=self._interval_s):
            try:
                self.tick()
            except Exception:
                _LOG.exception("Heartbeat tick failed (continuing).")
