from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Final, TypeAlias

from ..errors import FailureReason

N_LABELS: Final[int] = 10
EPSILON: Final[float] = 1e-6


class Label(IntEnum):
    ZERO = 0
    ONE = 1
    TWO = 2
    THREE = 3
    FOUR = 4
    FIVE = 5
    SIX = 6
    SEVEN = 7
    EIGHT = 8
    NINE = 9


@dataclass(frozen=True)
class RawScore:
    label: Label
    score: float


@dataclass(frozen=True)
class LabeledMap:
    entries: Mapping[object, object]


@dataclass(frozen=True)
class DenseArray:
    # Index is the label ordinal
    values: Sequence[object]


@dataclass(frozen=True)
class ScalarLabel:
    best_label: object
    companion: LabeledMap | DenseArray | None = None


@dataclass(frozen=True)
class Opaque:
    payload: object


OutputEnvelope: TypeAlias = LabeledMap | DenseArray | ScalarLabel | Opaque


@dataclass(frozen=True)
class ProbabilityDistribution:
    """Complete distribution over the ten labels, indexed by label ordinal."""

    probs: tuple[float, ...]

    def __post_init__(self) -> None:
        if len(self.probs) != N_LABELS:
            raise ValueError("distribution must cover all ten labels")
        for p in self.probs:
            if not math.isfinite(p) or p < 0.0 or p > 1.0 + EPSILON:
                raise ValueError("probabilities must be finite and within [0,1]")
        if abs(math.fsum(self.probs) - 1.0) > EPSILON:
            raise ValueError("probabilities must sum to 1")

    def probability(self, label: Label) -> float:
        return self.probs[int(label)]

    def as_dict(self) -> dict[Label, float]:
        return {lbl: self.probs[int(lbl)] for lbl in Label}


@dataclass(frozen=True)
class RankedEntry:
    label: Label
    probability: float


@dataclass(frozen=True)
class RankedResult:
    """Labels ordered by descending probability, ties by ascending label."""

    entries: tuple[RankedEntry, ...]

    def __post_init__(self) -> None:
        if len(self.entries) != N_LABELS:
            raise ValueError("ranked result must hold all ten labels")

    @property
    def top(self) -> RankedEntry:
        return self.entries[0]

    def top_k(self, k: int) -> tuple[RankedEntry, ...]:
        return self.entries[: max(0, k)]

    def as_pairs(self) -> list[tuple[int, float]]:
        return [(int(e.label), e.probability) for e in self.entries]


class AttemptPath(str, Enum):
    primary = "primary"
    secondary = "secondary"


@dataclass(frozen=True)
class InferenceAttempt:
    path: AttemptPath
    envelope: OutputEnvelope | None
    result: RankedResult | None = None
    failure: FailureReason | None = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None
