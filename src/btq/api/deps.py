# src/btq/api/deps.py
from __future__ import annotations

from fastapi import Request

from btq.config import Settings
from btq.engine import RetentionSweeper, StatusQuery, TaskQueue, WorkerPool


def get_settings(request: Request) -> Settings:
    """
    Per-request access to settings stored on app.state during startup.
    """
    return request.app.state.settings  # type: ignore[attr-defined]


def get_queue(request: Request) -> TaskQueue:
    return request.app.state.queue  # type: ignore[attr-defined]


def get_status_query(request: Request) -> StatusQuery:
    return request.app.state.status  # type: ignore[attr-defined]


def get_pool(request: Request) -> WorkerPool:
    return request.app.state.pool  # type: ignore[attr-defined]


def get_sweeper(request: Request) -> RetentionSweeper:
    return request.app.state.sweeper  # type: ignore[attr-defined]
