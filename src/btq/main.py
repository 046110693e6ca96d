from __future__ import annotations

from btq.config import load_settings
from btq.logging import configure_logging, get_logger


def main() -> int:
    """
    Programmatic entrypoint (`btq` console script).

    Recommended dev command:
      uvicorn btq.api.app:app --reload

    This entrypoint exists so you can also do:
      python -m btq.main
    """
    settings = load_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    log.info(
        "Starting BTQ: db=%s builds=%s concurrency=%d retention=%.1fh",
        settings.db_path,
        settings.builds_dir,
        settings.max_concurrent_tasks,
        settings.retention_hours,
    )

    # Import here so config/logging are set before app import side-effects.
    try:
        from btq.api.app import app  # noqa: F401
    except Exception:
        log.exception("Failed to import FastAPI app (btq.api.app:app).")
        return 1

    import uvicorn

    uvicorn.run(
        "btq.api.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        reload=False,  # prefer `uvicorn ... --reload` in dev
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
