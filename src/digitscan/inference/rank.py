from __future__ import annotations

from .types import Label, ProbabilityDistribution, RankedEntry, RankedResult


def rank(dist: ProbabilityDistribution) -> RankedResult:
    ordered = sorted(Label, key=lambda lbl: (-dist.probability(lbl), int(lbl)))
    return RankedResult(
        entries=tuple(RankedEntry(label=lbl, probability=dist.probability(lbl)) for lbl in ordered)
    )
