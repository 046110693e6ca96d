# src/btq/storage/db.py
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator


@dataclass(frozen=True)
class SQLiteDB:
    """
    SQLite connection factory for the queue store.

    Notes:
    - One connection per call site / thread; connections are never shared.
    - WAL lets pollers read while the scheduler and workers write.
    """
    db_path: Path
    timeout_s: float = 5.0

    def connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout_s,
            isolation_level=None,          # transactions are explicit (BEGIN/COMMIT)
            check_same_thread=True,
        )
        conn.row_factory = sqlite3.Row
        self._apply_pragmas(conn)
        return conn

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """Short-lived connection, closed on exit."""
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        cur = conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.execute(f"PRAGMA busy_timeout={int(self.timeout_s * 1000)};")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()


def begin_immediate(conn: sqlite3.Connection) -> None:
    """
    Begins a transaction that takes the RESERVED lock up front, so the
    read-then-write inside it cannot interleave with another writer.
    """
    conn.execute("BEGIN IMMEDIATE;")


def begin_deferred(conn: sqlite3.Connection) -> None:
    """
    Begins a DEFERRED transaction. Under WAL, reads inside it share one snapshot.
    """
    conn.execute("BEGIN;")


def commit(conn: sqlite3.Connection) -> None:
    conn.execute("COMMIT;")


def rollback(conn: sqlite3.Connection) -> None:
    conn.execute("ROLLBACK;")


@contextmanager
def immediate(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """BEGIN IMMEDIATE ... COMMIT, rolling back on any exception."""
    begin_immediate(conn)
    try:
        yield conn
    except BaseException:
        rollback(conn)
        raise
    commit(conn)


@contextmanager
def snapshot(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Groups several reads so they observe the same database state."""
    begin_deferred(conn)
    try:
        yield conn
    finally:
        rollback(conn)
