from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from ...errors import ConfigurationError, InvariantViolation
from ...rng import DeterministicRng
from ..types.cells import EMPTY_SYMBOL, Group, Position
from ..types.intent import Move


@dataclass(frozen=True, slots=True)
class GridSnapshot:
    """Occupancy of every cell at one generation.

    ``cells`` is row-major and holds the occupying agent id or ``None``. The
    mappings are read-only views; a snapshot never changes once built.
    """

    width: int
    height: int
    generation: int
    cells: Tuple[Optional[int], ...]
    groups: Mapping[int, Group]
    positions: Mapping[int, Position]

    @property
    def population(self) -> int:
        return len(self.positions)

    def in_bounds(self, position: Position) -> bool:
        row, col = position
        return 0 <= row < self.height and 0 <= col < self.width

    def occupant(self, position: Position) -> Optional[int]:
        return self.cells[self._index(position)]

    def is_empty(self, position: Position) -> bool:
        return self.occupant(position) is None

    def group_at(self, position: Position) -> Optional[Group]:
        agent_id = self.occupant(position)
        if agent_id is None:
            return None
        return self.groups[agent_id]

    def position_of(self, agent_id: int) -> Position:
        return self.positions[agent_id]

    def group_of(self, agent_id: int) -> Group:
        return self.groups[agent_id]

    def agent_ids(self) -> List[int]:
        return sorted(self.positions)

    def empty_cells(self) -> List[Position]:
        width = self.width
        return [Position(index // width, index % width) for index, agent_id in enumerate(self.cells) if agent_id is None]

    def counts_by_group(self) -> Dict[Group, int]:
        counts = {group: 0 for group in Group}
        for group in self.groups.values():
            counts[group] += 1
        return counts

    def iter_rows(self) -> Iterator[Tuple[Optional[int], ...]]:
        for row in range(self.height):
            yield self.cells[row * self.width : (row + 1) * self.width]

    def render_text(self) -> str:
        lines = []
        for row in self.iter_rows():
            lines.append(
                "".join(EMPTY_SYMBOL if agent_id is None else self.groups[agent_id].symbol for agent_id in row)
            )
        return "\n".join(lines)

    def _index(self, position: Position) -> int:
        if not self.in_bounds(position):
            raise IndexError(f"position {tuple(position)} is outside a {self.height}x{self.width} grid")
        return position[0] * self.width + position[1]


class Grid:
    """Owner of the authoritative snapshot; each ``apply`` yields the next generation."""

    def __init__(self, snapshot: GridSnapshot):
        self._current = snapshot

    @classmethod
    def populate(cls, width: int, height: int, counts: Mapping[Group, int], rng: DeterministicRng) -> "Grid":
        cells = [Position(row, col) for row in range(height) for col in range(width)]
        requested = sum(counts.values())
        if requested > len(cells):
            raise ConfigurationError("population", f"{requested} agents do not fit on {len(cells)} cells")
        rng.shuffle(cells)
        groups: Dict[int, Group] = {}
        positions: Dict[int, Position] = {}
        next_id = 0
        # Group enum order keeps placement independent of mapping order.
        for group in Group:
            for _ in range(counts.get(group, 0)):
                groups[next_id] = group
                positions[next_id] = cells[next_id]
                next_id += 1
        return cls(_build_snapshot(width, height, 0, groups, positions))

    @classmethod
    def from_layout(cls, rows: Sequence[str], generation: int = 0) -> "Grid":
        """Build a grid from text rows: ``R``/``B`` for agents, ``.`` or space for empty cells."""
        if not rows:
            raise ConfigurationError("layout", "at least one row is required")
        width = len(rows[0])
        if width == 0 or any(len(row) != width for row in rows):
            raise ConfigurationError("layout", "rows must be non-empty and of equal length")
        groups: Dict[int, Group] = {}
        positions: Dict[int, Position] = {}
        for row_index, row in enumerate(rows):
            for col_index, symbol in enumerate(row):
                if symbol in (EMPTY_SYMBOL, " "):
                    continue
                group = Group.from_symbol(symbol)
                if group is None:
                    raise ConfigurationError("layout", f"unknown cell symbol {symbol!r} at ({row_index}, {col_index})")
                agent_id = len(positions)
                groups[agent_id] = group
                positions[agent_id] = Position(row_index, col_index)
        return cls(_build_snapshot(width, len(rows), generation, groups, positions))

    @property
    def generation(self) -> int:
        return self._current.generation

    def snapshot(self) -> GridSnapshot:
        return self._current

    def apply(self, moves: Iterable[Move]) -> GridSnapshot:
        current = self._current
        positions = dict(current.positions)
        targets: set[Position] = set()
        movers: set[int] = set()
        checked: List[Move] = []
        for move in moves:
            agent_id, source, target = move
            if agent_id not in positions:
                raise InvariantViolation(f"move for unknown agent {agent_id}")
            if agent_id in movers:
                raise InvariantViolation(f"agent {agent_id} was resolved to more than one move")
            if positions[agent_id] != source:
                raise InvariantViolation(
                    f"stale move for agent {agent_id}: source {tuple(source)} but agent is at {tuple(positions[agent_id])}"
                )
            if not current.in_bounds(target):
                raise InvariantViolation(f"agent {agent_id} resolved to out-of-bounds cell {tuple(target)}")
            if target in targets:
                raise InvariantViolation(f"two moves target cell {tuple(target)}")
            if current.occupant(target) is not None:
                raise InvariantViolation(f"agent {agent_id} resolved to occupied cell {tuple(target)}")
            movers.add(agent_id)
            targets.add(target)
            checked.append(move)

        for agent_id, _, target in checked:
            positions[agent_id] = Position(*target)
        # Groups never change, so the read-only view is shared between generations.
        self._current = _build_snapshot(
            current.width, current.height, current.generation + 1, current.groups, positions
        )
        return self._current


def _build_snapshot(
    width: int,
    height: int,
    generation: int,
    groups: Mapping[int, Group],
    positions: Mapping[int, Position],
) -> GridSnapshot:
    cells: List[Optional[int]] = [None] * (width * height)
    for agent_id, (row, col) in positions.items():
        index = row * width + col
        if cells[index] is not None:
            raise InvariantViolation(f"agents {cells[index]} and {agent_id} share cell ({row}, {col})")
        cells[index] = agent_id
    if not isinstance(groups, MappingProxyType):
        groups = MappingProxyType(dict(groups))
    return GridSnapshot(
        width=width,
        height=height,
        generation=generation,
        cells=tuple(cells),
        groups=groups,
        positions=MappingProxyType(dict(positions)),
    )
