# src/btq/api/app.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from btq.builders import Builder, load_builder
from btq.config import load_settings
from btq.engine import PoolConfig, RetentionSweeper, StatusQuery, TaskQueue, WorkerPool
from btq.logging import configure_logging, get_logger
from btq.storage import SQLiteDB, apply_migrations

from .routes import router

_LOG = get_logger(__name__)


def create_app(builder: Optional[Builder] = None) -> FastAPI:
    """
    Builds the FastAPI app. `builder` overrides the BTQ_BUILDER setting
    (tests inject their own).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """
        Responsible for:
        - loading settings and configuring logging
        - running DB migrations
        - starting the retention sweeper and the worker pool
        - stopping both on shutdown (in-flight builds are left to finish)
        """
        settings = load_settings()
        configure_logging(settings.log_level)

        db = SQLiteDB(settings.db_path)
        with db.session() as conn:
            apply_migrations(conn)

        settings.builds_dir.mkdir(parents=True, exist_ok=True)
        settings.uploads_dir.mkdir(parents=True, exist_ok=True)

        sweeper = RetentionSweeper(
            db,
            builds_dir=settings.builds_dir,
            uploads_dir=settings.uploads_dir,
            retention_ms=settings.retention_ms,
            interval_ms=settings.sweep_interval_ms,
            enabled=settings.sweep_enabled,
            cleanup_uploads_on_complete=settings.cleanup_uploads_on_complete,
        )
        pool = WorkerPool(
            db,
            builder if builder is not None else load_builder(settings.builder, settings),
            PoolConfig(
                max_concurrent_tasks=settings.max_concurrent_tasks,
                sched_tick_ms=settings.sched_tick_ms,
                lease_ms=settings.lease_ms,
                heartbeat_ms=settings.heartbeat_ms,
                retention_ms=settings.retention_ms,
            ),
            on_task_finished=sweeper.on_task_finished,
        )

        # Store on app.state for DI
        app.state.settings = settings
        app.state.db = db
        app.state.queue = TaskQueue(db)
        app.state.status = StatusQuery(db, retention_ms=settings.retention_ms)
        app.state.sweeper = sweeper
        app.state.pool = pool

        sweeper.start()
        pool.start()
        _LOG.info("Startup complete.")

        try:
            yield
        finally:
            pool.stop(timeout_s=5.0)
            sweeper.stop(timeout_s=5.0)
            _LOG.info("Shutdown complete.")

    app = FastAPI(
        title="Build Task Queue",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


app = create_app()
