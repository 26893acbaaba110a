from __future__ import annotations

from enum import Enum
from typing import NamedTuple, Optional


class Group(str, Enum):
    RED = "Red"
    BLUE = "Blue"

    @property
    def symbol(self) -> str:
        return self.value[0]

    @classmethod
    def from_symbol(cls, symbol: str) -> Optional["Group"]:
        for group in cls:
            if group.symbol == symbol.upper():
                return group
        return None


class EdgePolicy(str, Enum):
    EXCLUDE = "exclude"
    WRAP = "wrap"


class Position(NamedTuple):
    row: int
    col: int


EMPTY_SYMBOL = "."
