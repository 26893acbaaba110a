from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RoundMetrics:
    """Figures for one published generation.

    ``satisfied``, ``satisfaction_ratio`` and ``average_similarity`` describe the
    published grid. ``requested``, ``moves``, ``degraded`` and ``timeouts`` count
    what happened during the round that produced it.
    """

    generation: int
    population: int
    satisfied: int
    unsatisfied: int
    requested: int
    moves: int
    degraded: int
    timeouts: int
    satisfaction_ratio: float
    average_similarity: float
    round_duration_ms: float = 0.0
