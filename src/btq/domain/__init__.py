"""
Domain layer for BTQ.

- states: TaskState lifecycle enum and BuildKind
- models: Pydantic models for specs, records and API input/output
- errors: domain-level exceptions
"""

from .states import BuildKind, TaskState
from .models import (
    BuildResult,
    CancelResponse,
    ErrorResponse,
    Progress,
    QueuePosition,
    StatusView,
    TaskCreate,
    TaskListResponse,
    TaskRecord,
    TaskSpec,
)
from .errors import (
    BTQBaseError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "BuildKind",
    "TaskState",
    "TaskSpec",
    "TaskRecord",
    "Progress",
    "BuildResult",
    "QueuePosition",
    "TaskCreate",
    "StatusView",
    "TaskListResponse",
    "CancelResponse",
    "ErrorResponse",
    "BTQBaseError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
]
