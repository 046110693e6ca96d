# src/btq/builders/base.py
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from btq.domain.models import BuildResult, TaskSpec


class ProgressSink(Protocol):
    def __call__(self, message: str, percent: Optional[float] = None) -> None: ...


class Builder(Protocol):
    """
    Performs one build. Called from a worker thread; must be safe to call
    concurrently for distinct task ids. May block for minutes.

    Returns a BuildResult (or a mapping with the same keys). Raising is
    allowed: the worker pool turns the exception into a FAILED task.
    """

    def __call__(self, spec: TaskSpec, progress: ProgressSink) -> BuildResult | Mapping[str, Any]: ...


def coerce_result(raw: Any) -> BuildResult:
    """
    Normalizes whatever a Builder returned into a BuildResult whose failure
    always carries a non-empty error.
    """
    if isinstance(raw, BuildResult):
        result = raw
    elif isinstance(raw, Mapping):
        data = dict(raw)
        # camelCase keys from JS-style builders
        if "artifactPath" in data and "artifact_path" not in data:
            data["artifact_path"] = data.pop("artifactPath")
        result = BuildResult.model_validate(data)
    else:
        return BuildResult(
            success=False,
            error=f"Builder returned {type(raw).__name__}, expected a build result",
        )

    if not result.success and not (result.error or "").strip():
        result = result.model_copy(update={"error": "Build failed"})
    return result
