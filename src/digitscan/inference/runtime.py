"""Torch model runtime exposing the two inference entry points.

``classify_pipeline`` mimics a vision classification request: the model output
is turned into per-class observations keyed by class identifier.
``classify_direct`` exposes the model's own named output features and lets
``envelope_from_features`` decide which envelope variant they form.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Final, Protocol

import torch
from torch import Tensor

from ..config import Settings
from .model import ModelHandle
from .types import DenseArray, LabeledMap, Opaque, OutputEnvelope, ScalarLabel

FEATURE_LABEL_PROBS: Final[str] = "labelProbabilities"
FEATURE_CLASS_LABEL: Final[str] = "classLabel"
FEATURE_CLASS_PROBS: Final[str] = "classLabelProbs"
FEATURE_OUTPUT: Final[str] = "output"


class ModelRuntime(Protocol):
    def classify_pipeline(self, handle: ModelHandle, prepared: Tensor) -> OutputEnvelope: ...

    def classify_direct(self, handle: ModelHandle, prepared: Tensor) -> OutputEnvelope: ...


class TorchRuntime:
    def __init__(self, settings: Settings) -> None:
        self._tta = bool(settings.inference.tta)
        if settings.app.threads > 0:
            torch.set_num_threads(int(settings.app.threads))

    def classify_pipeline(self, handle: ModelHandle, prepared: Tensor) -> OutputEnvelope:
        x = _as_batch(prepared)
        batch = _augment_for_tta(x) if self._tta else x
        with torch.no_grad():
            out = handle.model(batch)
        if not isinstance(out, Tensor) or out.ndim != 2:
            # No classification observations for non-classifier outputs
            return LabeledMap(entries={})
        if handle.output_schema == "logits":
            probs = _softmax_avg(out, handle.temperature)
        elif handle.output_schema == "probabilities":
            probs = [float(v) for v in out.mean(dim=0).tolist()]
        else:
            return LabeledMap(entries={})
        return LabeledMap(entries={str(i): p for i, p in enumerate(probs)})

    def classify_direct(self, handle: ModelHandle, prepared: Tensor) -> OutputEnvelope:
        with torch.no_grad():
            out = handle.model(_as_batch(prepared))
        return envelope_from_features(_features_of(out, handle))


def envelope_from_features(features: Mapping[str, object]) -> OutputEnvelope:
    """Pick the envelope variant for a set of named model output features."""
    probs = features.get(FEATURE_LABEL_PROBS)
    label = features.get(FEATURE_CLASS_LABEL)
    if probs is not None and label is not None:
        return ScalarLabel(best_label=label, companion=_distribution_envelope(probs))
    class_probs = features.get(FEATURE_CLASS_PROBS)
    dist_value = class_probs if class_probs is not None else probs
    if dist_value is not None:
        return _distribution_envelope(dist_value) or Opaque(payload=dist_value)
    if label is not None:
        return ScalarLabel(best_label=label)
    first = next(iter(features), None)
    return Opaque(payload=features[first] if first is not None else None)


def _distribution_envelope(value: object) -> LabeledMap | DenseArray | None:
    if isinstance(value, Mapping):
        return LabeledMap(entries=value)
    if isinstance(value, Tensor):
        return DenseArray(values=value.detach().flatten().tolist())
    if isinstance(value, list | tuple):
        return DenseArray(values=value)
    return None


def _features_of(out: object, handle: ModelHandle) -> Mapping[str, object]:
    if isinstance(out, Mapping):
        return {str(k): v for k, v in out.items()}
    if not isinstance(out, Tensor):
        return {FEATURE_OUTPUT: out}
    schema = handle.output_schema
    if schema == "logits" and out.ndim == 2:
        probs = torch.softmax(out[0] / handle.temperature, dim=0)
        best = int(torch.argmax(probs).item())
        return {FEATURE_LABEL_PROBS: probs, FEATURE_CLASS_LABEL: best}
    if schema == "probabilities" and out.ndim == 2:
        return {FEATURE_LABEL_PROBS: out[0]}
    if schema == "class_label":
        flat = out.flatten()
        label = int(flat[0].item()) if flat.numel() == 1 else int(torch.argmax(flat).item())
        return {FEATURE_CLASS_LABEL: label}
    return {FEATURE_OUTPUT: out}


def _as_batch(x: Tensor) -> Tensor:
    t = x
    if t.ndim == 2:
        t = t.unsqueeze(0)
    if t.ndim == 3:
        # Expect 1x28x28 -> add batch
        t = t.unsqueeze(0)
    return t.to(dtype=torch.float32)


def _softmax_avg(logits: Tensor, temperature: float) -> list[float]:
    probs = torch.softmax(logits / temperature, dim=1)
    mean_probs = probs.mean(dim=0) if probs.shape[0] > 1 else probs[0]
    return [float(v) for v in mean_probs.tolist()]


def _augment_for_tta(x: Tensor) -> Tensor:
    if x.ndim != 4:
        return x
    # Identity + one-pixel shifts
    batch = [x]
    batch.append(torch.roll(x, shifts=(0, 1), dims=(2, 3)))
    batch.append(torch.roll(x, shifts=(0, -1), dims=(2, 3)))
    batch.append(torch.roll(x, shifts=(1, 0), dims=(2, 3)))
    batch.append(torch.roll(x, shifts=(-1, 0), dims=(2, 3)))
    return torch.cat(batch, dim=0)
