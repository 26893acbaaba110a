from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ..core.grid import GridSnapshot
from .metrics import RoundMetrics


@dataclass(frozen=True, slots=True)
class SnapshotMetadata:
    width: int
    height: int
    seed: int
    similarity_threshold: float
    config_version: str


@dataclass(frozen=True, slots=True)
class Snapshot:
    """What observers receive after every published round."""

    generation: int
    grid: GridSnapshot
    metrics: Optional[RoundMetrics]
    metadata: SnapshotMetadata

    @property
    def satisfaction_ratio(self) -> Optional[float]:
        if self.metrics is None:
            return None
        return self.metrics.satisfaction_ratio

    def to_payload(self) -> Dict[str, Any]:
        rows: List[List[Optional[str]]] = [
            [None if agent_id is None else self.grid.groups[agent_id].value for agent_id in row]
            for row in self.grid.iter_rows()
        ]
        return {
            "generation": self.generation,
            "metrics": None if self.metrics is None else asdict(self.metrics),
            "metadata": asdict(self.metadata),
            "cells": rows,
        }
