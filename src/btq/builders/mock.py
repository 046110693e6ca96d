# src/btq/builders/mock.py
from __future__ import annotations

import time
from pathlib import Path
from typing import TYPE_CHECKING

from btq.artifacts import artifact_path
from btq.domain.models import BuildResult, TaskSpec
from btq.logging import get_logger

from .base import ProgressSink

if TYPE_CHECKING:
    from btq.config import Settings

_LOG = get_logger(__name__)

MOCK_STEPS: tuple[tuple[str, int], ...] = (
    ("Starting mock build...", 10),
    ("Processing files...", 30),
    ("Building APK...", 60),
    ("Finalizing...", 90),
)


class MockBuilder:
    """
    Stand-in for the native toolchain: walks fixed milestones with a delay and
    writes a placeholder APK named <name>--<task id>.apk into spec.output_dir.
    """

    def __init__(self, step_s: float = 1.0, ext: str = "apk") -> None:
        self.step_s = step_s
        self.ext = ext

    @classmethod
    def from_settings(cls, settings: "Settings") -> "MockBuilder":
        return cls(step_s=settings.mock_step_ms / 1000.0)

    def __call__(self, spec: TaskSpec, progress: ProgressSink) -> BuildResult:
        start = time.monotonic()
        _LOG.warning("Mock build for task %s - returning a fake artifact", spec.id)

        for message, percent in MOCK_STEPS:
            progress(message, percent)
            if self.step_s:
                time.sleep(self.step_s)

        dest = artifact_path(spec.output_dir, spec.name, spec.id, self.ext)
        Path(spec.output_dir).mkdir(parents=True, exist_ok=True)
        dest.write_text(f"MOCK APK FILE FOR TESTING ({spec.kind} {spec.id})\n", encoding="utf-8")

        progress("Build completed!", 100)
        return BuildResult(
            success=True,
            artifact_path=str(dest),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
