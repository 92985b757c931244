from __future__ import annotations

import asyncio
import time

import torch
from torch import Tensor

from ..config import Settings
from ..errors import InvalidImage, ModelNotLoaded, ModelUnavailable
from ..logging import get_logger, log_event
from ..request_context import request_scope
from .model import ModelHandle
from .orchestrator import FallbackOrchestrator, OrchestrationOutcome
from .runtime import ModelRuntime, TorchRuntime
from .types import RankedResult

_ACCEPTED_SHAPES: tuple[tuple[int, ...], ...] = ((28, 28), (1, 28, 28), (1, 1, 28, 28))


class InferenceService:
    """Entry point for callers: loads the model once and classifies prepared images."""

    def __init__(
        self,
        settings: Settings,
        runtime: ModelRuntime | None = None,
        handle: ModelHandle | None = None,
    ) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._runtime: ModelRuntime = runtime if runtime is not None else TorchRuntime(settings)
        self._load_error: ModelUnavailable | None = None
        if handle is None:
            try:
                handle = ModelHandle.load(
                    settings.inference.candidates, settings.inference.model_dir
                )
            except ModelUnavailable as exc:
                self._logger.warning("model_unavailable reasons=%d", len(exc.reasons))
                self._load_error = exc
        self._handle: ModelHandle | None = handle

    def is_ready(self) -> bool:
        return self._handle is not None

    @property
    def model_id(self) -> str | None:
        return self._handle.model_id if self._handle is not None else None

    @property
    def load_error(self) -> ModelUnavailable | None:
        return self._load_error

    def classify(
        self, image: Tensor, *, direct_only: bool | None = None, request_id: str | None = None
    ) -> RankedResult:
        return self.run(image, direct_only=direct_only, request_id=request_id).unwrap()

    async def aclassify(
        self, image: Tensor, *, direct_only: bool | None = None, request_id: str | None = None
    ) -> RankedResult:
        return await asyncio.to_thread(
            self.classify, image, direct_only=direct_only, request_id=request_id
        )

    def run(
        self, image: Tensor, *, direct_only: bool | None = None, request_id: str | None = None
    ) -> OrchestrationOutcome:
        """Classify and return the full outcome, including per-path attempts.

        ``direct_only`` overrides ``InferenceConfig.direct_only`` for this call.
        ``request_id`` tags every log line emitted while the call runs.
        """
        if request_id is None:
            return self._run(image, direct_only)
        with request_scope(request_id):
            return self._run(image, direct_only)

    def _run(self, image: Tensor, direct_only: bool | None) -> OrchestrationOutcome:
        handle = self._handle
        if handle is None:
            raise ModelNotLoaded()
        _validate_prepared(image)
        cfg = self._settings.inference
        runtime = self._runtime
        orch = FallbackOrchestrator(
            primary=lambda x: runtime.classify_pipeline(handle, x),
            secondary=lambda x: runtime.classify_direct(handle, x),
            confident=cfg.confident_score,
            residual=cfg.residual_score,
            direct_only=cfg.direct_only if direct_only is None else direct_only,
        )
        t0 = time.perf_counter()
        outcome = orch.run(image)
        dt_ms = int((time.perf_counter() - t0) * 1000)
        if outcome.result is not None:
            top = outcome.result.top
            path = outcome.path
            log_event(
                "classify_finished",
                {
                    "latency_ms": dt_ms,
                    "digit": int(top.label),
                    "confidence": float(top.probability),
                    "model_id": handle.model_id,
                    "path": path.value if path is not None else "",
                    "fallback": len(outcome.attempts) > 1,
                },
            )
        else:
            log_event("classify_failed", {"latency_ms": dt_ms, "model_id": handle.model_id})
        return outcome


def _validate_prepared(image: object) -> None:
    if not isinstance(image, Tensor):
        raise InvalidImage("prepared input must be a tensor")
    if image.numel() == 0:
        raise InvalidImage("prepared input is empty")
    shape = tuple(int(s) for s in image.shape)
    if shape not in _ACCEPTED_SHAPES:
        raise InvalidImage(f"prepared input has shape {shape}, expected 1x28x28")
    if not bool(torch.isfinite(image.to(dtype=torch.float32)).all()):
        raise InvalidImage("prepared input contains non-finite values")