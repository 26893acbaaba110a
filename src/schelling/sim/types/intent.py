from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Optional, Union

from .cells import Position


@dataclass(frozen=True, slots=True)
class NeighborCounts:
    same: int
    different: int
    empty_nearby: bool

    @property
    def occupied(self) -> int:
        return self.same + self.different

    @property
    def similarity(self) -> Optional[float]:
        if self.occupied == 0:
            return None
        return self.same / self.occupied


@dataclass(frozen=True, slots=True)
class Stay:
    agent_id: int
    satisfied: bool = True
    counts: Optional[NeighborCounts] = None
    timed_out: bool = False


@dataclass(frozen=True, slots=True)
class RequestMove:
    agent_id: int
    # None asks for any empty cell; the resolver picks one.
    target: Optional[Position] = None
    counts: Optional[NeighborCounts] = None


Intent = Union[Stay, RequestMove]


class Move(NamedTuple):
    agent_id: int
    source: Position
    target: Position
