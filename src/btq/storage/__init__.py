# src/btq/storage/__init__.py
"""
Storage layer for BTQ (SQLite queue store).

- db: connection factory + pragmas + transaction helpers
- migrations: packaged SQL migrations runner
- repo: transactional data access (enqueue, claim, CAS transitions, expiry)
"""

from .db import SQLiteDB
from .migrations import apply_migrations, schema_version
from .repo import TaskRepo, open_repo

__all__ = ["SQLiteDB", "apply_migrations", "schema_version", "TaskRepo", "open_repo"]
