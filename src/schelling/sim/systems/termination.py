from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from ..types.intent import Intent, RequestMove, Stay


class TerminationReason(str, Enum):
    CONVERGED = "converged"
    MAX_ROUNDS = "max_rounds"
    CANCELLED = "cancelled"


def is_settled(intents: Iterable[Intent]) -> bool:
    """True when every agent answered and none asked to move.

    A timed-out agent stands in as ``Stay`` without having looked at the grid, so
    a round with timeouts never counts as settled.
    """
    for intent in intents:
        if isinstance(intent, RequestMove):
            return False
        if isinstance(intent, Stay) and intent.timed_out:
            return False
    return True


@dataclass(frozen=True, slots=True)
class TerminationPolicy:
    max_rounds: int

    def evaluate(self, generation: int, intents: Iterable[Intent]) -> Optional[TerminationReason]:
        """Decide after publishing, from the intents already collected this round."""
        if is_settled(intents):
            return TerminationReason.CONVERGED
        if generation >= self.max_rounds:
            return TerminationReason.MAX_ROUNDS
        return None
