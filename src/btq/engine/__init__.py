# src/btq/engine/__init__.py
"""
Execution engine for BTQ.

- queue: idempotent enqueue, lookup, removal, queue position
- lifecycle: state machine reads and CAS transitions
- scheduler: worker pool (claim loop + concurrency control)
- worker: runs the Builder for one task and records the outcome
- heartbeat: progress ratchet, synthesized progress, lease renewal
- recovery: fails ACTIVE tasks left behind by a dead process
- sweeper: retention-based cleanup of files and records
- status: poller-facing status view
"""

from .lifecycle import LifecycleTracker
from .queue import TaskQueue
from .scheduler import PoolConfig, WorkerPool
from .status import StatusQuery
from .sweeper import RetentionSweeper, SweepReport

__all__ = [
    "LifecycleTracker",
    "PoolConfig",
    "RetentionSweeper",
    "StatusQuery",
    "SweepReport",
    "TaskQueue",
    "WorkerPool",
]
