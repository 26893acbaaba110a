from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict

import yaml

from .errors import ConfigurationError
from .sim.types.cells import EdgePolicy, Group


@dataclass
class PopulationConfig:
    # Fraction of all cells initially occupied by each group.
    densities: Dict[str, float] = field(default_factory=lambda: {"Red": 0.45, "Blue": 0.45})


@dataclass
class NeighborhoodConfig:
    radius: int = 1
    edge_policy: str = EdgePolicy.EXCLUDE.value


@dataclass
class SchedulerConfig:
    workers: int = 4
    agent_timeout: float = 1.0


@dataclass
class SimulationConfig:
    width: int = 50
    height: int = 50
    similarity_threshold: float = 0.6
    max_rounds: int = 100
    seed: int = 42
    config_version: str = "v1"
    population: PopulationConfig = field(default_factory=PopulationConfig)
    neighborhood: NeighborhoodConfig = field(default_factory=NeighborhoodConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @staticmethod
    def from_yaml(path: Path) -> "SimulationConfig":
        try:
            data = yaml.safe_load(Path(path).read_text())
        except yaml.YAMLError as exc:
            raise ConfigurationError("config file", f"{path} is not valid YAML ({exc})") from exc
        return load_config(data or {})

    @property
    def cell_count(self) -> int:
        return self.width * self.height

    @property
    def edge_policy(self) -> EdgePolicy:
        return EdgePolicy(self.neighborhood.edge_policy)

    def group_counts(self) -> Dict[Group, int]:
        """Number of agents to place per group.

        Each group gets the whole part of its share of the cells. Cells left over
        from rounding go to the largest fractional parts, ties in group order, so
        the total never exceeds the grid.
        """
        cells = self.cell_count
        shares = {Group(name): density * cells for name, density in self.population.densities.items()}
        counts = {group: int(math.floor(share)) for group, share in shares.items()}
        total = min(cells, int(round(sum(shares.values()))))
        order = list(Group)
        by_remainder = sorted(shares, key=lambda group: (counts[group] - shares[group], order.index(group)))
        for group in by_remainder[: max(0, total - sum(counts.values()))]:
            counts[group] += 1
        return counts

    def validate(self) -> None:
        _require_int("width", self.width, minimum=1)
        _require_int("height", self.height, minimum=1)
        _require_int("max_rounds", self.max_rounds, minimum=1)
        _require_int("seed", self.seed)
        threshold = self.similarity_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or math.isnan(threshold):
            raise ConfigurationError("similarity_threshold", f"expected a number, got {threshold!r}")
        if not 0.0 <= threshold <= 1.0:
            raise ConfigurationError("similarity_threshold", f"{threshold} is outside [0, 1]")

        densities = self.population.densities
        if not densities:
            raise ConfigurationError("population.densities", "at least one group is required")
        known = {group.value for group in Group}
        for name, density in densities.items():
            if name not in known:
                raise ConfigurationError("population.densities", f"unknown group {name!r} (expected one of {sorted(known)})")
            if isinstance(density, bool) or not isinstance(density, (int, float)) or not 0.0 <= density <= 1.0:
                raise ConfigurationError("population.densities", f"density of {name} must be within [0, 1], got {density!r}")
        if sum(densities.values()) > 1.0 + 1e-9:
            raise ConfigurationError("population.densities", "densities sum to more than 1")

        _require_int("neighborhood.radius", self.neighborhood.radius, minimum=1)
        try:
            EdgePolicy(self.neighborhood.edge_policy)
        except ValueError:
            raise ConfigurationError(
                "neighborhood.edge_policy",
                f"{self.neighborhood.edge_policy!r} is not one of {[policy.value for policy in EdgePolicy]}",
            ) from None

        _require_int("scheduler.workers", self.scheduler.workers, minimum=1)
        timeout = self.scheduler.agent_timeout
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or not timeout > 0:
            raise ConfigurationError("scheduler.agent_timeout", f"must be a positive number of seconds, got {timeout!r}")


@dataclass
class AppConfig:
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    broadcast_interval: int = 1
    round_delay: float = 0.05


def _require_int(name: str, value: Any, minimum: int | None = None) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(name, f"expected an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigurationError(name, f"must be >= {minimum}, got {value}")


def _section(cls: type, raw: Any, name: str) -> Any:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigurationError(name, f"expected a mapping, got {type(raw).__name__}")
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ConfigurationError(name, f"unknown keys {unknown}")
    return cls(**raw)


def load_config(raw: dict) -> SimulationConfig:
    if not isinstance(raw, dict):
        raise ConfigurationError("config", f"expected a mapping, got {type(raw).__name__}")
    population = _section(PopulationConfig, raw.get("population"), "population")
    if not isinstance(population.densities, dict):
        raise ConfigurationError("population.densities", "expected a mapping of group name to density")
    neighborhood = _section(NeighborhoodConfig, raw.get("neighborhood"), "neighborhood")
    scheduler = _section(SchedulerConfig, raw.get("scheduler"), "scheduler")
    sim_values = {k: v for k, v in raw.items() if k not in {"population", "neighborhood", "scheduler"}}
    allowed = {f.name for f in fields(SimulationConfig)}
    unknown = sorted(set(sim_values) - allowed)
    if unknown:
        raise ConfigurationError("config", f"unknown keys {unknown}")
    config = SimulationConfig(population=population, neighborhood=neighborhood, scheduler=scheduler, **sim_values)
    config.validate()
    return config
