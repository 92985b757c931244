"""Two-path inference with fallback.

The primary path (vision pipeline) runs first. The secondary path (direct
feature provider) runs exactly once, and only when the primary path errored
or produced nothing decodable. In direct-only mode the primary path is
skipped and the secondary path is the only attempt.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from torch import Tensor

from ..errors import DecodingFailed, FailureReason, FailureStage, InvalidImage, PredictionFailed
from ..logging import get_logger, log_event
from .decoder import CONFIDENT_SCORE, RESIDUAL_SCORE, decode, summarize_envelope
from .normalize import normalize
from .rank import rank
from .types import AttemptPath, InferenceAttempt, OutputEnvelope, RankedResult

InferencePath = Callable[[Tensor], OutputEnvelope]


class OrchestratorState(str, Enum):
    init = "init"
    attempt_primary = "attempt_primary"
    attempt_secondary = "attempt_secondary"
    succeeded = "succeeded"
    failed = "failed"


_TERMINAL = frozenset({OrchestratorState.succeeded, OrchestratorState.failed})
_SKIPPED_PRIMARY = FailureReason(
    AttemptPath.primary.value, FailureStage.skipped, "primary path disabled (direct only)"
)


@dataclass(frozen=True)
class OrchestrationOutcome:
    state: OrchestratorState
    attempts: tuple[InferenceAttempt, ...]
    result: RankedResult | None = None
    error: PredictionFailed | None = None

    @property
    def path(self) -> AttemptPath | None:
        """Path that produced the result, if any."""
        for att in self.attempts:
            if att.succeeded:
                return att.path
        return None

    def unwrap(self) -> RankedResult:
        if self.result is not None:
            return self.result
        if self.error is not None:
            raise self.error
        raise RuntimeError(f"orchestrator stopped in non-terminal state {self.state.value}")


class FallbackOrchestrator:
    def __init__(
        self,
        primary: InferencePath,
        secondary: InferencePath,
        *,
        confident: float = CONFIDENT_SCORE,
        residual: float = RESIDUAL_SCORE,
        direct_only: bool = False,
    ) -> None:
        self._paths: dict[AttemptPath, InferencePath] = {
            AttemptPath.primary: primary,
            AttemptPath.secondary: secondary,
        }
        self._confident = confident
        self._residual = residual
        self._direct_only = direct_only
        self._logger = get_logger()

    def run(self, prepared: Tensor) -> OrchestrationOutcome:
        state = OrchestratorState.init
        attempts: list[InferenceAttempt] = []
        result: RankedResult | None = None
        while state not in _TERMINAL:
            if state is OrchestratorState.init:
                nxt = (
                    OrchestratorState.attempt_secondary
                    if self._direct_only
                    else OrchestratorState.attempt_primary
                )
            elif state is OrchestratorState.attempt_primary:
                att = self._attempt(AttemptPath.primary, prepared)
                attempts.append(att)
                result = att.result
                if att.succeeded:
                    nxt = OrchestratorState.succeeded
                else:
                    nxt = OrchestratorState.attempt_secondary
                    log_event(
                        "inference_fallback",
                        {"path": AttemptPath.secondary.value, "stage": _stage_of(att)},
                    )
            else:
                att = self._attempt(AttemptPath.secondary, prepared)
                attempts.append(att)
                result = att.result
                nxt = OrchestratorState.succeeded if att.succeeded else OrchestratorState.failed
            self._logger.debug("orchestrator_transition from=%s to=%s", state.value, nxt.value)
            state = nxt

        if state is OrchestratorState.succeeded:
            return OrchestrationOutcome(state=state, attempts=tuple(attempts), result=result)
        reasons = {a.path: _failure_of(a) for a in attempts}
        return OrchestrationOutcome(
            state=state,
            attempts=tuple(attempts),
            error=PredictionFailed(
                primary=reasons.get(AttemptPath.primary, _SKIPPED_PRIMARY),
                secondary=reasons[AttemptPath.secondary],
            ),
        )

    def _attempt(self, path: AttemptPath, prepared: Tensor) -> InferenceAttempt:
        invoke = self._paths[path]
        try:
            envelope = invoke(prepared)
        except InvalidImage:
            raise
        except Exception as exc:
            reason = FailureReason(path.value, FailureStage.pipeline, _describe(exc))
            log_event(
                "inference_path_failed",
                {"path": path.value, "stage": reason.stage.value},
                level=logging.WARNING,
            )
            return InferenceAttempt(path=path, envelope=None, failure=reason)

        raw = decode(envelope, confident=self._confident, residual=self._residual)
        try:
            dist = normalize(raw)
        except DecodingFailed as exc:
            reason = FailureReason(
                path.value,
                FailureStage.decode,
                f"{exc.message} envelope={summarize_envelope(envelope)}",
            )
            log_event(
                "inference_path_failed",
                {"path": path.value, "stage": reason.stage.value},
                level=logging.WARNING,
            )
            return InferenceAttempt(path=path, envelope=envelope, failure=reason)
        return InferenceAttempt(path=path, envelope=envelope, result=rank(dist))


def _describe(exc: BaseException) -> str:
    msg = str(exc)
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


def _stage_of(att: InferenceAttempt) -> str:
    return att.failure.stage.value if att.failure is not None else ""


def _failure_of(att: InferenceAttempt) -> FailureReason:
    if att.failure is None:
        raise RuntimeError("failed outcome holds a successful attempt")
    return att.failure
