from __future__ import annotations

import random
from typing import List, TypeVar

T = TypeVar("T")

PLACEMENT_RNG_SALT = 0x5CE11A9E0F1ACE01
RESOLVER_RNG_SALT = 0xC0F11C7DEC1DE5ED


def derive_stream_seed(seed: int, salt: int) -> int:
    return (int(seed) ^ int(salt)) & 0xFFFFFFFFFFFFFFFF


class DeterministicRng:
    """Seeded generator; placement and conflict resolution each own one stream."""

    def __init__(self, seed: int):
        self._random = random.Random(seed)

    def shuffle(self, items: List[T]) -> None:
        self._random.shuffle(items)
