# src/btq/api/routes.py
from __future__ import annotations

import secrets
import string
import time
from pathlib import Path

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import FileResponse, JSONResponse

from btq.config import Settings
from btq.domain.errors import BTQBaseError, ConflictError, NotFoundError
from btq.domain.models import (
    DEFAULT_APP_NAME,
    CancelResponse,
    ErrorResponse,
    StatusView,
    TaskCreate,
    TaskListResponse,
    TaskSpec,
)
from btq.domain.states import TaskState
from btq.engine import RetentionSweeper, StatusQuery, TaskQueue, WorkerPool
from btq.logging import get_logger

from .deps import get_pool, get_queue, get_settings, get_status_query, get_sweeper

_LOG = get_logger(__name__)
router = APIRouter()

_ID_ALPHABET = string.ascii_letters + string.digits


def now_ms() -> int:
    return int(time.time() * 1000)


def new_task_id(length: int = 12) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def _error_response(err: BTQBaseError, http_status: int) -> JSONResponse:
    payload = ErrorResponse(
        error=err.message,
        code=err.code,
        details=err.details or {},
    ).model_dump()
    return JSONResponse(status_code=http_status, content=payload)


@router.get("/healthz")
def healthz() -> dict:
    return {"ok": True}


@router.get("/api")
def api_info() -> dict:
    return {
        "name": "Build Task Queue API",
        "endpoints": {
            "POST /tasks": "Submit a build (idempotent by id)",
            "GET /tasks": "List tasks in queue order",
            "GET /tasks/{task_id}": "Get build status, progress and queue position",
            "GET /tasks/{task_id}/artifact": "Download the built artifact",
            "DELETE /tasks/{task_id}": "Cancel a pending build or clean up a finished one",
        },
    }


@router.post("/tasks", response_model=StatusView, status_code=201)
def submit_task(
    task: TaskCreate,
    response: Response,
    queue: TaskQueue = Depends(get_queue),
    status: StatusQuery = Depends(get_status_query),
    pool: WorkerPool = Depends(get_pool),
    settings: Settings = Depends(get_settings),
):
    """
    Submit a build.

    Notes:
    - Resubmitting an existing id returns that task (200) and never runs it twice.
    - Build outputs always go to the configured builds directory.
    """
    spec = TaskSpec(
        id=task.id or new_task_id(),
        kind=task.kind,
        name=task.name or DEFAULT_APP_NAME,
        input_ref=task.input_ref,
        output_dir=str(settings.builds_dir),
        created_at=now_ms(),
        options=task.options,
    )
    _, created = queue.enqueue(spec)
    if created:
        pool.wake()
    else:
        response.status_code = 200

    try:
        return status.query_status(spec.id)
    except NotFoundError as e:
        # Cancelled between enqueue and read.
        return _error_response(e, 404)


@router.get("/tasks/{task_id}", response_model=StatusView)
def get_task_status(
    task_id: str,
    status: StatusQuery = Depends(get_status_query),
):
    try:
        return status.query_status(task_id)
    except NotFoundError as e:
        return _error_response(e, 404)


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    status: StatusQuery = Depends(get_status_query),
):
    views, total = status.list_status(limit=limit, offset=offset)
    return TaskListResponse(tasks=views, total=total)


@router.delete("/tasks/{task_id}", response_model=CancelResponse)
def cancel_task(
    task_id: str,
    queue: TaskQueue = Depends(get_queue),
    sweeper: RetentionSweeper = Depends(get_sweeper),
):
    """
    Cancel a PENDING task, or drop a finished one together with its files.
    An ACTIVE build cannot be cancelled (409).
    """
    try:
        record = queue.get(task_id)
        removed = queue.remove(task_id)
    except NotFoundError as e:
        return _error_response(e, 404)

    if not removed:
        return _error_response(
            ConflictError(
                "Task is being built and cannot be cancelled",
                details={"id": task_id, "state": TaskState.ACTIVE.value},
            ),
            409,
        )

    artifact = record.result.artifact_path if record.result else None
    sweeper.purge_task(task_id, [artifact] if artifact else [])
    return CancelResponse(id=task_id, cancelled=True)


@router.get("/tasks/{task_id}/artifact", response_model=None)
def download_artifact(
    task_id: str,
    queue: TaskQueue = Depends(get_queue),
):
    try:
        record = queue.get(task_id)
    except NotFoundError as e:
        return _error_response(e, 404)

    path = record.result.artifact_path if record.result else None
    if record.state is not TaskState.COMPLETED or not path:
        return _error_response(
            ConflictError(
                f"Task is {record.state}; no artifact to download",
                details={"id": task_id, "state": record.state.value},
            ),
            409,
        )

    artifact = Path(path)
    if not artifact.is_file():
        return _error_response(
            NotFoundError("Artifact is no longer available", details={"id": task_id}),
            404,
        )
    return FileResponse(artifact, filename=artifact.name, media_type="application/octet-stream")
