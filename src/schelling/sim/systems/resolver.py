from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List

from ...rng import DeterministicRng
from ..core.grid import GridSnapshot
from ..types.intent import Intent, Move, RequestMove


@dataclass(slots=True)
class Resolution:
    moves: List[Move] = field(default_factory=list)
    # Requests that found no free cell and stay put this round.
    degraded: List[int] = field(default_factory=list)


class ConflictResolver:
    """Assigns empty cells to relocation requests, at most one mover per cell.

    Requests are sorted by agent id and then shuffled with the resolver's own
    generator, so the outcome depends on the seed and never on the order in which
    intents arrived. Cells are handed out first-come in that order.
    """

    def __init__(self, rng: DeterministicRng):
        self._rng = rng

    def resolve(self, intents: Iterable[Intent], snapshot: GridSnapshot) -> Resolution:
        requests = sorted(
            (intent for intent in intents if isinstance(intent, RequestMove)),
            key=lambda intent: intent.agent_id,
        )
        resolution = Resolution()
        if not requests:
            return resolution
        self._rng.shuffle(requests)

        free = snapshot.empty_cells()
        self._rng.shuffle(free)
        available = set(free)
        cursor = 0
        for request in requests:
            target = None
            if request.target is not None:
                if request.target in available:
                    target = request.target
            else:
                while cursor < len(free) and free[cursor] not in available:
                    cursor += 1
                if cursor < len(free):
                    target = free[cursor]
                    cursor += 1
            if target is None:
                resolution.degraded.append(request.agent_id)
                continue
            available.discard(target)
            resolution.moves.append(Move(request.agent_id, snapshot.position_of(request.agent_id), target))
        return resolution
