from __future__ import annotations

import asyncio
import io
import logging
from datetime import UTC, datetime
from pathlib import Path

import pytest
import torch
from torch import Tensor, nn

from digitscan.config import AppConfig, InferenceConfig, Settings
from digitscan.errors import (
    FailureStage,
    InvalidImage,
    ModelNotLoaded,
    ModelUnavailable,
    PredictionFailed,
)
from digitscan.inference.manifest import ModelManifest
from digitscan.inference.model import ModelHandle
from digitscan.inference.service import InferenceService
from digitscan.inference.types import (
    AttemptPath,
    DenseArray,
    Label,
    LabeledMap,
    Opaque,
    OutputEnvelope,
    ScalarLabel,
)
from digitscan.logging import _JsonFormatter, get_logger


class _StubRuntime:
    def __init__(
        self,
        pipeline: OutputEnvelope | Exception,
        direct: OutputEnvelope | Exception,
    ) -> None:
        self._pipeline = pipeline
        self._direct = direct
        self.pipeline_calls = 0
        self.direct_calls = 0

    def classify_pipeline(self, handle: ModelHandle, prepared: Tensor) -> OutputEnvelope:
        self.pipeline_calls += 1
        if isinstance(self._pipeline, Exception):
            raise self._pipeline
        return self._pipeline

    def classify_direct(self, handle: ModelHandle, prepared: Tensor) -> OutputEnvelope:
        self.direct_calls += 1
        if isinstance(self._direct, Exception):
            raise self._direct
        return self._direct


class _NullModel:
    def eval(self) -> object:
        return self

    def __call__(self, x: Tensor) -> object:
        return torch.zeros((int(x.shape[0]), 10))


def _settings(model_dir: Path | None = None) -> Settings:
    inf = InferenceConfig() if model_dir is None else InferenceConfig(model_dir=model_dir)
    return Settings(app=AppConfig(), inference=inf)


def _handle() -> ModelHandle:
    man = ModelManifest(
        schema_version="v2",
        model_id="stub",
        arch="resnet18",
        n_classes=10,
        version="1",
        created_at=datetime.now(UTC),
        temperature=1.0,
        output_schema="logits",
    )
    return ModelHandle(
        model_id="stub", kind="compiled", model=_NullModel(), manifest=man, source=Path("stub")
    )


def _image() -> Tensor:
    return torch.zeros((1, 28, 28), dtype=torch.float32)


def _service(runtime: _StubRuntime) -> InferenceService:
    return InferenceService(_settings(), runtime=runtime, handle=_handle())


def test_missing_model_is_not_ready_and_classify_fails_fast(tmp_path: Path) -> None:
    runtime = _StubRuntime(ScalarLabel(best_label=1), ScalarLabel(best_label=1))
    svc = InferenceService(_settings(tmp_path), runtime=runtime)
    assert svc.is_ready() is False
    assert svc.model_id is None
    assert isinstance(svc.load_error, ModelUnavailable)
    with pytest.raises(ModelNotLoaded):
        svc.classify(_image())
    assert runtime.pipeline_calls == 0


def test_scenario_dense_array_top_is_five() -> None:
    vals = [0.01, 0.01, 0.01, 0.01, 0.01, 0.9, 0.01, 0.01, 0.01, 0.01]
    svc = _service(_StubRuntime(DenseArray(values=vals), ScalarLabel(best_label=0)))
    result = svc.classify(_image())
    assert result.top.label is Label.FIVE
    assert abs(result.top.probability - 0.9) < 1e-6


def test_scenario_scalar_label_renormalized() -> None:
    svc = _service(_StubRuntime(ScalarLabel(best_label=2), DenseArray(values=[1.0])))
    result = svc.classify(_image())
    assert result.top.label is Label.TWO
    assert abs(sum(e.probability for e in result.entries) - 1.0) < 1e-6
    others = {e.probability for e in result.entries[1:]}
    assert len(others) == 1


def test_scenario_opaque_primary_uses_secondary_result() -> None:
    runtime = _StubRuntime(Opaque(payload={}), LabeledMap(entries={"7": 1.0}))
    outcome = _service(runtime).run(_image())
    assert outcome.path is AttemptPath.secondary
    assert outcome.unwrap().top.label is Label.SEVEN
    assert runtime.pipeline_calls == 1 and runtime.direct_calls == 1


def test_scenario_both_paths_fail_names_both() -> None:
    runtime = _StubRuntime(Opaque(payload={}), RuntimeError("feature provider crashed"))
    with pytest.raises(PredictionFailed) as ei:
        _service(runtime).classify(_image())
    body = ei.value.to_dict()
    assert body["code"] == "prediction_failed"
    details = body["details"]
    assert isinstance(details, dict)
    assert set(details) == {"primary", "secondary"}
    assert "feature provider crashed" in ei.value.message


def test_scenario_all_zero_dense_is_uniform() -> None:
    svc = _service(_StubRuntime(DenseArray(values=[0.0] * 10), ScalarLabel(best_label=3)))
    result = svc.classify(_image())
    assert all(abs(e.probability - 0.1) < 1e-9 for e in result.entries)
    assert [int(e.label) for e in result.entries] == list(range(10))


def test_invalid_image_is_rejected_before_inference() -> None:
    runtime = _StubRuntime(ScalarLabel(best_label=1), ScalarLabel(best_label=1))
    svc = _service(runtime)
    bad_inputs: list[object] = [
        torch.zeros((0,)),
        torch.zeros((3, 28, 28)),
        torch.zeros((1, 32, 32)),
        torch.full((1, 28, 28), float("nan")),
        [[0.0] * 28] * 28,
    ]
    for bad in bad_inputs:
        with pytest.raises(InvalidImage):
            svc.classify(bad)  # deliberately wrong input types
    assert runtime.pipeline_calls == 0


def test_accepted_input_shapes() -> None:
    svc = _service(_StubRuntime(ScalarLabel(best_label=4), ScalarLabel(best_label=4)))
    for shape in ((28, 28), (1, 28, 28), (1, 1, 28, 28)):
        assert svc.classify(torch.zeros(shape)).top.label is Label.FOUR


def test_repeated_calls_are_identical() -> None:
    svc = _service(_StubRuntime(LabeledMap(entries={"1": 0.3, "2": 0.3, "3": 0.4}), Opaque(None)))
    assert svc.classify(_image()) == svc.classify(_image())


def test_aclassify_runs_concurrently() -> None:
    svc = _service(_StubRuntime(ScalarLabel(best_label=9), ScalarLabel(best_label=9)))

    async def _run() -> list[Label]:
        results = await asyncio.gather(*(svc.aclassify(_image()) for _ in range(4)))
        return [r.top.label for r in results]

    assert asyncio.run(_run()) == [Label.NINE] * 4


def test_classify_logs_finished_event() -> None:
    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(_JsonFormatter())
    logger = get_logger()
    old_level = logger.level
    logger.setLevel(logging.INFO)
    logger.addHandler(h)
    try:
        runtime = _StubRuntime(Opaque(payload=None), ScalarLabel(best_label=6))
        _service(runtime).classify(_image())
    finally:
        logger.removeHandler(h)
        logger.setLevel(old_level)
    out = buf.getvalue()
    assert '"message": "classify_finished"' in out
    assert '"digit": 6' in out and '"path": "secondary"' in out and '"fallback": true' in out


class _TinyNet(nn.Module):
    def __init__(self) -> None:
        super().__init__()
        self.fc = nn.Linear(28 * 28, 10)
        with torch.no_grad():
            self.fc.weight.zero_()
            self.fc.bias.zero_()
            self.fc.bias[2] = 4.0

    def forward(self, x: Tensor) -> Tensor:
        return self.fc(x.flatten(1))


def test_end_to_end_with_compiled_model(tmp_path: Path) -> None:
    d = tmp_path / "MNISTClassifier"
    d.mkdir()
    torch.jit.script(_TinyNet()).save((d / "model.ts").as_posix())
    svc = InferenceService(_settings(tmp_path))
    assert svc.is_ready() and svc.model_id == "MNISTClassifier"
    outcome = svc.run(_image())
    assert outcome.path is AttemptPath.primary
    assert outcome.unwrap().top.label is Label.TWO


def test_direct_only_call_skips_pipeline() -> None:
    runtime = _StubRuntime(LabeledMap(entries={"1": 1.0}), ScalarLabel(best_label=8))
    outcome = _service(runtime).run(_image(), direct_only=True)
    assert runtime.pipeline_calls == 0 and runtime.direct_calls == 1
    assert outcome.path is AttemptPath.secondary
    assert outcome.unwrap().top.label is Label.EIGHT


def test_direct_only_from_settings_and_call_override() -> None:
    runtime = _StubRuntime(LabeledMap(entries={"1": 1.0}), ScalarLabel(best_label=8))
    settings = Settings(app=AppConfig(), inference=InferenceConfig(direct_only=True))
    svc = InferenceService(settings, runtime=runtime, handle=_handle())
    assert svc.classify(_image()).top.label is Label.EIGHT
    assert svc.classify(_image(), direct_only=False).top.label is Label.ONE
    assert runtime.pipeline_calls == 1 and runtime.direct_calls == 1


def test_direct_only_failure_is_typed() -> None:
    runtime = _StubRuntime(LabeledMap(entries={"1": 1.0}), Opaque(payload={"meta": "x"}))
    with pytest.raises(PredictionFailed) as ei:
        _service(runtime).classify(_image(), direct_only=True)
    err = ei.value
    assert err.primary.stage is FailureStage.skipped
    assert err.secondary.stage is FailureStage.decode
    assert "Opaque type=dict size=1" in err.secondary.message
    assert runtime.pipeline_calls == 0


def test_request_id_tags_log_lines() -> None:
    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(_JsonFormatter())
    logger = get_logger()
    old_level = logger.level
    logger.setLevel(logging.INFO)
    logger.addHandler(h)
    try:
        runtime = _StubRuntime(ScalarLabel(best_label=3), ScalarLabel(best_label=3))
        svc = _service(runtime)
        svc.classify(_image(), request_id="req-42")
        svc.classify(_image())
    finally:
        logger.removeHandler(h)
        logger.setLevel(old_level)
    lines = [ln for ln in buf.getvalue().splitlines() if "classify_finished" in ln]
    assert len(lines) == 2
    assert '"request_id": "req-42"' in lines[0]
    assert "request_id" not in lines[1]
