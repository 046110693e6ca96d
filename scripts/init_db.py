#!/usr/bin/env python3
from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = REPO_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from btq.config import load_settings
from btq.logging import configure_logging, get_logger
from btq.storage import SQLiteDB, apply_migrations, schema_version


def main() -> int:
    settings = load_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    db = SQLiteDB(settings.db_path)
    with db.session() as conn:
        applied = apply_migrations(conn)
        version = schema_version(conn)

    for directory in (settings.builds_dir, settings.uploads_dir):
        directory.mkdir(parents=True, exist_ok=True)

    log.info("Queue store ready at %s (schema v%d, %d migration(s) applied)", settings.db_path, version, applied)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
