from __future__ import annotations

from functools import lru_cache
from typing import List, Optional, Tuple

from ..core.grid import GridSnapshot
from ..types.cells import EdgePolicy, Group, Position
from ..types.intent import NeighborCounts


@lru_cache(maxsize=None)
def moore_offsets(radius: int = 1) -> Tuple[Tuple[int, int], ...]:
    return tuple(
        (dr, dc)
        for dr in range(-radius, radius + 1)
        for dc in range(-radius, radius + 1)
        if (dr, dc) != (0, 0)
    )


def neighbor_positions(
    snapshot: GridSnapshot,
    position: Position,
    radius: int = 1,
    edge_policy: EdgePolicy = EdgePolicy.EXCLUDE,
) -> List[Position]:
    """Cells of the Moore neighborhood around ``position``.

    With ``EXCLUDE`` out-of-bounds offsets are dropped, so edge and corner cells
    have fewer neighbors. With ``WRAP`` the grid is a torus; on grids smaller than
    the neighborhood, a cell reached through several offsets is listed once and
    the center cell itself never appears.
    """
    row, col = position
    height = snapshot.height
    width = snapshot.width
    result: List[Position] = []
    if edge_policy == EdgePolicy.WRAP:
        seen = {(row, col)}
        for dr, dc in moore_offsets(radius):
            cell = ((row + dr) % height, (col + dc) % width)
            if cell in seen:
                continue
            seen.add(cell)
            result.append(Position(*cell))
        return result
    for dr, dc in moore_offsets(radius):
        r = row + dr
        c = col + dc
        if 0 <= r < height and 0 <= c < width:
            result.append(Position(r, c))
    return result


def neighbor_counts(
    snapshot: GridSnapshot,
    position: Position,
    group: Optional[Group] = None,
    radius: int = 1,
    edge_policy: EdgePolicy = EdgePolicy.EXCLUDE,
) -> NeighborCounts:
    """Count same-group and other-group occupants around ``position``.

    ``group`` defaults to the group of the agent standing at ``position``. Reads
    the snapshot only, so any number of agents may call it at once.
    """
    if group is None:
        group = snapshot.group_at(position)
        if group is None:
            raise ValueError(f"cell {tuple(position)} is empty and no group was given")
    same = 0
    different = 0
    empty_nearby = False
    cells = snapshot.cells
    groups = snapshot.groups
    width = snapshot.width
    for r, c in neighbor_positions(snapshot, position, radius, edge_policy):
        agent_id = cells[r * width + c]
        if agent_id is None:
            empty_nearby = True
        elif groups[agent_id] == group:
            same += 1
        else:
            different += 1
    return NeighborCounts(same=same, different=different, empty_nearby=empty_nearby)
