from __future__ import annotations

import math
from collections.abc import Sequence

from ..errors import DecodingFailed
from .types import EPSILON, N_LABELS, ProbabilityDistribution, RawScore


def normalize(raw: Sequence[RawScore]) -> ProbabilityDistribution:
    """Build a complete distribution from decoded scores.

    Raises DecodingFailed when ``raw`` is empty. Labels absent from ``raw``
    score 0; a repeated label keeps its last score.
    """
    if not raw:
        raise DecodingFailed()
    vals = [0.0] * N_LABELS
    for rs in raw:
        vals[int(rs.label)] = _clamp(rs.score)

    n_inf = sum(1 for v in vals if math.isinf(v))
    if n_inf:
        # Unbounded scores take all the mass
        share = 1.0 / n_inf
        return _build([share if math.isinf(v) else 0.0 for v in vals])

    peak = max(vals)
    if peak > 1.0:
        # Keep the sum finite for very large scores
        vals = [v / peak for v in vals]
    total = math.fsum(vals)
    if total <= 0.0:
        return _build([1.0 / N_LABELS] * N_LABELS)
    if abs(total - 1.0) <= EPSILON:
        return _build(vals)
    return _build([v / total for v in vals])


def _clamp(score: float) -> float:
    if math.isnan(score) or score < 0.0:
        return 0.0
    return float(score)


def _build(vals: list[float]) -> ProbabilityDistribution:
    return ProbabilityDistribution(probs=tuple(vals))
