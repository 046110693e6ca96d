# src/btq/storage/migrations.py
from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from btq.logging import get_logger

_LOG = get_logger(__name__)

_MIGRATION_RE = re.compile(r"^(?P<version>\d+)_.*\.sql$")

# Shipped with the package as btq/migrations/NNN_name.sql
PACKAGED_MIGRATIONS = Path(__file__).resolve().parent.parent / "migrations"


@dataclass(frozen=True)
class Migration:
    version: int
    path: Path

    @property
    def filename(self) -> str:
        return self.path.name


def apply_migrations(conn: sqlite3.Connection, migrations_dir: Optional[Path] = None) -> int:
    """
    Brings the queue store schema up to date and returns how many migrations ran.

    Versions already listed in schema_migrations are skipped, so this is run
    on every startup.
    """
    source = (migrations_dir or PACKAGED_MIGRATIONS).resolve()
    if not source.is_dir():
        raise FileNotFoundError(f"Migrations dir not found: {source}")

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations(
          version INTEGER PRIMARY KEY,
          filename TEXT NOT NULL,
          applied_at INTEGER NOT NULL
        );
        """
    )

    current = schema_version(conn)
    ran = 0
    for m in discover_migrations(source):
        if m.version <= current:
            continue
        _LOG.info("Applying migration %03d (%s)", m.version, m.filename)
        conn.executescript(m.path.read_text(encoding="utf-8"))
        conn.execute(
            "INSERT INTO schema_migrations(version, filename, applied_at) "
            "VALUES (?, ?, CAST(strftime('%s','now') AS INTEGER) * 1000);",
            (m.version, m.filename),
        )
        ran += 1

    if not ran:
        _LOG.debug("Schema is current (version %d).", current)
    return ran


def schema_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration version, 0 for an empty store."""
    try:
        row = conn.execute("SELECT MAX(version) AS v FROM schema_migrations;").fetchone()
    except sqlite3.OperationalError:
        return 0
    return int(row["v"] or 0)


def discover_migrations(migrations_dir: Path) -> list[Migration]:
    """
    NNN_*.sql files in version order. Two files claiming the same version is
    a packaging error.
    """
    by_version: dict[int, Migration] = {}
    for path in migrations_dir.glob("*.sql"):
        match = _MIGRATION_RE.match(path.name)
        if not match:
            continue
        version = int(match.group("version"))
        if version in by_version:
            raise ValueError(
                f"Duplicate migration version {version}: {by_version[version].filename}, {path.name}"
            )
        by_version[version] = Migration(version=version, path=path)
    return [by_version[v] for v in sorted(by_version)]
