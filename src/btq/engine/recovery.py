# src/btq/engine/recovery.py
from __future__ import annotations

import time
from typing import Iterable

from btq.logging import get_logger
from btq.storage import SQLiteDB, open_repo

_LOG = get_logger(__name__)

LEASE_EXPIRED_ERROR = "Build interrupted: worker lease expired (worker process stopped)"


def now_ms() -> int:
    return int(time.time() * 1000)


def run_recovery(db: SQLiteDB, *, retention_ms: int, running: Iterable[str] = ()) -> list[str]:
    """
    Crash recovery:
    - ACTIVE tasks whose lease expired belonged to a worker process that died.
      They are marked FAILED; builds get exactly one attempt, so nothing is
      re-queued.
    - `running` lists builds this process still owns; their lease may have
      lapsed (a missed renewal) but they are not orphans.

    Returns the ids transitioned.
    """
    with open_repo(db) as repo:
        failed = repo.fail_stale_active(now_ms(), retention_ms, LEASE_EXPIRED_ERROR, exclude=list(running))
    if failed:
        _LOG.warning("Recovery failed %d stale ACTIVE task(s): %s", len(failed), ", ".join(failed))
    return failed
