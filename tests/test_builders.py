# tests/test_builders.py
from pathlib import Path

import pytest

from btq.builders import MockBuilder, coerce_result, load_builder
from btq.config import load_settings
from btq.domain.errors import ValidationError
from btq.domain.models import BuildResult

from conftest import make_spec


def test_coerce_result_accepts_models_and_mappings():
    ok = BuildResult(success=True, artifact_path="/out/a.apk")
    assert coerce_result(ok) is ok

    r = coerce_result({"success": True, "artifactPath": "/out/b.apk", "extra": 1})
    assert r.success is True
    assert r.artifact_path == "/out/b.apk"


def test_failures_always_carry_an_error():
    assert coerce_result({"success": False}).error == "Build failed"
    assert coerce_result(BuildResult(success=False, error="  ")).error == "Build failed"
    assert coerce_result(BuildResult(success=False, error="sdk missing")).error == "sdk missing"

    r = coerce_result(None)
    assert r.success is False
    assert "NoneType" in r.error


def test_mock_builder_walks_milestones_and_writes_artifact(tmp_path: Path):
    reports = []
    spec = make_spec("mock-1", name="Demo App", output_dir=str(tmp_path / "out"))

    result = MockBuilder(step_s=0)(spec, lambda message, percent=None: reports.append((message, percent)))

    assert result.success is True
    artifact = Path(result.artifact_path)
    assert artifact.name == "Demo_App--mock-1.apk"
    assert artifact.is_file()
    percents = [p for _, p in reports]
    assert percents == [10, 30, 60, 90, 100]
    assert reports[-1] == ("Build completed!", 100)


def test_load_builder_from_settings(monkeypatch):
    monkeypatch.setenv("BTQ_MOCK_STEP_MS", "250")
    builder = load_builder("btq.builders.mock:MockBuilder", load_settings())
    assert isinstance(builder, MockBuilder)
    assert builder.step_s == 0.25


def test_load_builder_rejects_bad_targets():
    settings = load_settings()
    with pytest.raises(ValidationError):
        load_builder("btq.builders.mock", settings)
    with pytest.raises(ValidationError):
        load_builder("btq.builders.mock:NoSuchBuilder", settings)
    with pytest.raises(ValidationError):
        load_builder("btq.builders.mock:MOCK_STEPS", settings)
