from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Final


class ErrorCode(str, Enum):
    model_unavailable = "model_unavailable"
    model_not_loaded = "model_not_loaded"
    invalid_image = "invalid_image"
    decoding_failed = "decoding_failed"
    prediction_failed = "prediction_failed"


class FailureStage(str, Enum):
    pipeline = "pipeline"
    decode = "decode"
    # Path not attempted because the caller disabled it
    skipped = "skipped"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.model_unavailable: "No candidate model artifact could be loaded.",
    ErrorCode.model_not_loaded: "Model not loaded.",
    ErrorCode.invalid_image: "Input is not a prepared single-channel 28x28 buffer.",
    ErrorCode.decoding_failed: "Model output contained no usable scores.",
    ErrorCode.prediction_failed: "Both inference paths failed.",
}


@dataclass(frozen=True)
class FailureReason:
    """Why one inference path did not produce a result."""

    path: str
    stage: FailureStage
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "stage": self.stage.value, "message": self.message}

    def __str__(self) -> str:
        return f"{self.path}/{self.stage.value}: {self.message}"


class InferenceError(Exception):
    code: ErrorCode = ErrorCode.prediction_failed

    def __init__(self, message: str | None = None) -> None:
        msg = message if message is not None else _DEFAULT_MESSAGE[self.code]
        super().__init__(msg)
        self.message = msg

    def details(self) -> dict[str, object]:
        return {}

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"code": self.code.value, "message": self.message}
        extra = self.details()
        if extra:
            out["details"] = extra
        return out


class ModelUnavailable(InferenceError):
    code = ErrorCode.model_unavailable

    def __init__(self, reasons: Sequence[str] = ()) -> None:
        self.reasons: tuple[str, ...] = tuple(reasons)
        base = _DEFAULT_MESSAGE[ErrorCode.model_unavailable]
        super().__init__(base if not self.reasons else f"{base} {'; '.join(self.reasons)}")

    def details(self) -> dict[str, object]:
        return {"reasons": list(self.reasons)}


class ModelNotLoaded(InferenceError):
    code = ErrorCode.model_not_loaded


class InvalidImage(InferenceError):
    code = ErrorCode.invalid_image


class DecodingFailed(InferenceError):
    code = ErrorCode.decoding_failed


class PredictionFailed(InferenceError):
    code = ErrorCode.prediction_failed

    def __init__(self, primary: FailureReason, secondary: FailureReason) -> None:
        self.primary = primary
        self.secondary = secondary
        super().__init__(
            f"{_DEFAULT_MESSAGE[ErrorCode.prediction_failed]} "
            f"primary={primary} secondary={secondary}"
        )

    def details(self) -> dict[str, object]:
        return {"primary": self.primary.to_dict(), "secondary": self.secondary.to_dict()}
