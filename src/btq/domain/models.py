from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .states import BuildKind, TaskState

TASK_ID_PATTERN = r"^[A-Za-z0-9_]+(-[A-Za-z0-9_]+)*$"

# No "--" and no "." inside an id: artifact names are "<name>--<id>.<ext>".
TaskId = Annotated[str, Field(min_length=1, max_length=64, pattern=TASK_ID_PATTERN)]
HumanName = Annotated[str, Field(min_length=1, max_length=128)]

DEFAULT_APP_NAME = "MyApp"


class TaskSpec(BaseModel):
    """
    Immutable description of one build, handed to the Builder as-is.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: TaskId
    kind: BuildKind
    name: HumanName = DEFAULT_APP_NAME
    input_ref: Annotated[str, Field(min_length=1, max_length=4096)]
    output_dir: str
    created_at: int
    options: dict[str, Any] = Field(default_factory=dict)


class Progress(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: str = ""
    percent: Annotated[int, Field(ge=0, le=100)] = 0


class BuildResult(BaseModel):
    """
    What a Builder returns. `error` is set whenever `success` is False.
    """
    model_config = ConfigDict(extra="ignore")

    success: bool
    artifact_path: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None


class QueuePosition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    position: int
    total: int


class TaskRecord(BaseModel):
    """
    Stored lifecycle of one task. Only the worker pool mutates it after enqueue.
    """
    model_config = ConfigDict(extra="forbid")

    seq: int
    spec: TaskSpec
    state: TaskState
    progress: Progress = Field(default_factory=Progress)
    result: Optional[BuildResult] = None

    queued_at: int
    updated_at: int
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    expires_at: Optional[int] = None
    lease_expires_at: Optional[int] = None

    @property
    def id(self) -> str:
        return self.spec.id


class TaskCreate(BaseModel):
    """
    API input model for submitting a build.

    The id is optional; the API generates one when absent. Resubmitting an
    existing id returns the existing task.
    """
    model_config = ConfigDict(extra="forbid")

    id: Optional[TaskId] = None
    kind: BuildKind
    name: Optional[Annotated[str, Field(max_length=128)]] = None
    input_ref: Annotated[str, Field(min_length=1, max_length=4096)]
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, name: Optional[str]) -> Optional[str]:
        if name is None:
            return None
        name = name.strip()
        return name or None


class StatusView(BaseModel):
    """
    API output model: what a poller sees for one task.

    - progress only while PENDING/ACTIVE
    - queue_position/queue_total only while PENDING
    - result and expires_at only once COMPLETED/FAILED
    """
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    kind: BuildKind
    state: TaskState

    progress: Optional[Progress] = None
    result: Optional[BuildResult] = None

    queue_position: Optional[int] = None
    queue_total: Optional[int] = None

    created_at: int
    queued_at: int
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    expires_at: Optional[int] = None
    retention_ms: int


class TaskListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tasks: list[StatusView]
    total: int


class CancelResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    cancelled: bool


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    code: str
    details: dict = Field(default_factory=dict)
