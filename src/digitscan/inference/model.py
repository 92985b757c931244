from __future__ import annotations

import pickle
import zipfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final, Literal, Protocol

import torch
from torch import Tensor

from ..errors import ModelUnavailable
from ..logging import get_logger, log_event
from .manifest import ModelManifest

ArtifactKind = Literal["compiled", "uncompiled"]

COMPILED_FILENAME: Final[str] = "model.ts"
WEIGHTS_FILENAME: Final[str] = "model.pt"
MANIFEST_FILENAME: Final[str] = "manifest.json"
_N_CLASSES: Final[int] = 10
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> object: ...


@dataclass(frozen=True)
class ModelHandle:
    """Loaded classifier, read-only after construction."""

    model_id: str
    kind: ArtifactKind
    model: TorchModel
    manifest: ModelManifest
    source: Path

    @property
    def temperature(self) -> float:
        return float(self.manifest.temperature)

    @property
    def output_schema(self) -> str:
        return self.manifest.output_schema

    @classmethod
    def load(cls, candidates: Sequence[str], model_dir: Path) -> ModelHandle:
        """Load the first candidate that yields a usable artifact.

        Each candidate is tried as a compiled (TorchScript) artifact and then as
        an uncompiled state dict. Raises ModelUnavailable once every candidate
        and artifact kind has failed.
        """
        reasons: list[str] = []
        for name in candidates:
            cand_dir = model_dir / name
            for kind, loader in _ARTIFACT_LOADERS:
                try:
                    handle = loader(name, cand_dir)
                except _LOAD_ERRORS as exc:
                    reasons.append(f"{name}/{kind}: {exc}")
                    log_event("model_artifact_load_failed", {"candidate": name, "kind": kind})
                    continue
                log_event(
                    "model_loaded",
                    {"candidate": name, "kind": kind, "model_id": handle.model_id},
                )
                return handle
        _log_available_artifacts(model_dir)
        raise ModelUnavailable(reasons)


def _load_compiled(name: str, cand_dir: Path) -> ModelHandle:
    path = cand_dir / COMPILED_FILENAME
    if not path.is_file():
        raise FileNotFoundError(f"missing {COMPILED_FILENAME}")
    model = _load_torchscript(path)
    manifest_path = cand_dir / MANIFEST_FILENAME
    # Compiled archives may ship without a manifest
    manifest = (
        ModelManifest.from_path(manifest_path)
        if manifest_path.is_file()
        else _default_manifest(name)
    )
    model.eval()
    return ModelHandle(
        model_id=manifest.model_id, kind="compiled", model=model, manifest=manifest, source=path
    )


def _load_uncompiled(name: str, cand_dir: Path) -> ModelHandle:
    manifest_path = cand_dir / MANIFEST_FILENAME
    weights_path = cand_dir / WEIGHTS_FILENAME
    if not (manifest_path.is_file() and weights_path.is_file()):
        raise FileNotFoundError(f"missing {MANIFEST_FILENAME} or {WEIGHTS_FILENAME}")
    manifest = ModelManifest.from_path(manifest_path)
    sd = _load_state_dict_file(weights_path)
    _validate_state_dict(sd, manifest.arch, int(manifest.n_classes))
    model = _build_model(arch=manifest.arch, n_classes=int(manifest.n_classes))
    model.load_state_dict(sd)
    model.eval()
    return ModelHandle(
        model_id=manifest.model_id,
        kind="uncompiled",
        model=model,
        manifest=manifest,
        source=weights_path,
    )


_ARTIFACT_LOADERS: Final[tuple[tuple[ArtifactKind, Callable[[str, Path], ModelHandle]], ...]] = (
    ("compiled", _load_compiled),
    ("uncompiled", _load_uncompiled),
)


def _default_manifest(name: str) -> ModelManifest:
    return ModelManifest(
        schema_version="v2",
        model_id=name,
        arch="torchscript",
        n_classes=_N_CLASSES,
        version="0",
        created_at=datetime.now(),
        temperature=1.0,
        output_schema="logits",
    )


def _log_available_artifacts(model_dir: Path) -> None:
    logger = get_logger()
    try:
        found = sorted(
            p.relative_to(model_dir).as_posix()
            for p in model_dir.glob("*/*")
            if p.name in {COMPILED_FILENAME, WEIGHTS_FILENAME}
        )
    except OSError as exc:
        logger.info("model_artifacts_unreadable dir=%s error=%s", model_dir, exc)
        return
    logger.info("model_artifacts_missing dir=%s available=%s", model_dir, ",".join(found) or "-")


class _StateDictModel(TorchModel, Protocol):
    def load_state_dict(self, sd: dict[str, Tensor]) -> object: ...

    def state_dict(self) -> Mapping[str, Tensor]: ...


if TYPE_CHECKING:

    def _load_torchscript(path: Path) -> TorchModel: ...

    def _build_model(arch: str, n_classes: int) -> _StateDictModel: ...
else:

    def _load_torchscript(path: Path) -> TorchModel:
        return torch.jit.load(path.as_posix(), map_location=torch.device("cpu"))

    def _build_model(arch: str, n_classes: int) -> _StateDictModel:
        import importlib

        import torch.nn as nn

        if arch != "resnet18":
            raise ValueError(f"unsupported arch {arch}")
        tv_models = importlib.import_module("torchvision.models")
        fn_obj = getattr(tv_models, "resnet18", None)
        if not callable(fn_obj):
            raise RuntimeError("torchvision.models.resnet18 is not callable")
        inner = fn_obj(weights=None, num_classes=int(n_classes))
        # CIFAR-style stem and 1-channel input
        inner.conv1 = nn.Conv2d(1, 64, kernel_size=3, stride=1, padding=1, bias=False)
        inner.maxpool = nn.Identity()
        return inner


def _load_state_dict_file(path: Path) -> dict[str, Tensor]:
    obj: object = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
    sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
    if not isinstance(sd_obj, dict):
        raise ValueError("state dict file did not contain a dict")
    out: dict[str, Tensor] = {}
    for k, v in sd_obj.items():
        if isinstance(k, str) and torch.is_tensor(v):
            out[k] = v
        else:
            raise ValueError("invalid state dict entry")
    return out


def _validate_state_dict(sd: dict[str, Tensor], arch: str, n_classes: int) -> None:
    if arch != "resnet18":
        raise ValueError(f"unsupported arch {arch}")
    w = sd.get("fc.weight")
    b = sd.get("fc.bias")
    if w is None or b is None:
        raise ValueError("missing classifier weights in state dict")
    if w.ndim != 2 or b.ndim != 1:
        raise ValueError("invalid classifier tensor dimensions")
    if int(w.shape[0]) != n_classes or int(b.shape[0]) != n_classes:
        raise ValueError("classifier head size does not match n_classes")
    conv1 = sd.get("conv1.weight")
    if conv1 is None or conv1.ndim != 4 or int(conv1.shape[1]) != 1:
        raise ValueError("missing or invalid conv1.weight for 1-channel stem")
