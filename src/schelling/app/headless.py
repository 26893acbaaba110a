from __future__ import annotations

import argparse
import csv
import json
import logging
import statistics
import sys
from pathlib import Path
from typing import Optional, Sequence

from ..config import SimulationConfig
from ..errors import SchellingError
from ..sim.core.coordinator import RunResult, run_simulation
from ..sim.types.cells import Group
from ..sim.types.metrics import RoundMetrics
from ..sim.types.snapshot import Snapshot

logger = logging.getLogger(__name__)


_BASIC_HEADER = [
    "generation",
    "population",
    "satisfied",
    "moves",
    "satisfaction_ratio",
    "round_ms",
]

_DETAILED_HEADER = [
    "generation",
    "population",
    "satisfied",
    "unsatisfied",
    "requested",
    "moves",
    "degraded",
    "timeouts",
    "satisfaction_ratio",
    "average_similarity",
    "round_ms",
    "moves_per_agent",
    "empty_cells",
    "red",
    "blue",
]


def _format_basic_row(metrics: RoundMetrics, round_ms: float) -> list[object]:
    return [
        metrics.generation,
        metrics.population,
        metrics.satisfied,
        metrics.moves,
        f"{metrics.satisfaction_ratio:.4f}",
        f"{round_ms:.3f}",
    ]


def _format_detailed_row(snapshot: Snapshot, metrics: RoundMetrics, round_ms: float) -> list[object]:
    grid = snapshot.grid
    counts = grid.counts_by_group()
    population = metrics.population
    moves_per_agent = 0.0 if population <= 0 else metrics.moves / population
    return [
        metrics.generation,
        population,
        metrics.satisfied,
        metrics.unsatisfied,
        metrics.requested,
        metrics.moves,
        metrics.degraded,
        metrics.timeouts,
        f"{metrics.satisfaction_ratio:.4f}",
        f"{metrics.average_similarity:.4f}",
        f"{round_ms:.3f}",
        f"{moves_per_agent:.4f}",
        grid.width * grid.height - grid.population,
        counts[Group.RED],
        counts[Group.BLUE],
    ]


_STAT_KEYS = ("min", "max", "mean", "p50", "p90", "p99")


def _describe(values: Sequence[float]) -> dict[str, float]:
    """Spread of one per-round series for the run summary."""
    if not values:
        return dict.fromkeys(_STAT_KEYS, 0.0)
    if len(values) == 1:
        return dict.fromkeys(_STAT_KEYS, float(values[0]))
    cuts = statistics.quantiles(values, n=100, method="inclusive")
    return {
        "min": float(min(values)),
        "max": float(max(values)),
        "mean": statistics.fmean(values),
        "p50": cuts[49],
        "p90": cuts[89],
        "p99": cuts[98],
    }


def run_headless(
    config: Optional[SimulationConfig] = None,
    seed: Optional[int] = None,
    max_rounds: Optional[int] = None,
    log_path: Optional[Path] = None,
    deterministic_log: bool = False,
    log_format: str = "detailed",
    summary_path: Optional[Path] = None,
    print_grid: bool = False,
) -> RunResult:
    config = config if config is not None else SimulationConfig()
    if seed is not None:
        config.seed = seed
    if max_rounds is not None:
        config.max_rounds = max_rounds

    log_mode = log_format.lower().strip()
    if log_mode not in {"basic", "detailed"}:
        raise ValueError(f"Unknown log format: {log_format}")

    rows: list[list[object]] = []
    round_ms_series: list[float] = []

    def record(snapshot: Snapshot) -> None:
        metrics = snapshot.metrics
        if metrics is None:
            return
        round_ms = 0.0 if deterministic_log else metrics.round_duration_ms
        round_ms_series.append(round_ms)
        if log_path:
            if log_mode == "detailed":
                rows.append(_format_detailed_row(snapshot, metrics, round_ms))
            else:
                rows.append(_format_basic_row(metrics, round_ms))

    result = run_simulation(config, observers=[record])

    if log_path:
        with Path(log_path).open("w", newline="") as csv_file:
            writer = csv.writer(csv_file)
            writer.writerow(_DETAILED_HEADER if log_mode == "detailed" else _BASIC_HEADER)
            writer.writerows(rows)

    if summary_path:
        history = result.history
        summary = {
            "rounds": len(history),
            "generation": result.generation,
            "reason": result.reason.value,
            "seed": config.seed,
            "width": config.width,
            "height": config.height,
            "similarity_threshold": config.similarity_threshold,
            "log_format": log_mode,
            "deterministic_log": deterministic_log,
            "final_satisfaction_ratio": result.satisfaction_ratio,
            "round_ms": _describe(round_ms_series),
            "moves": _describe([float(m.moves) for m in history]),
            "satisfaction_ratio": _describe([m.satisfaction_ratio for m in history]),
            "average_similarity": _describe([m.average_similarity for m in history]),
            "timeouts": sum(m.timeouts for m in history),
        }
        Path(summary_path).write_text(json.dumps(summary, indent=2))

    if print_grid:
        print(result.final.grid.render_text())
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description="Headless Schelling segregation simulation")
    parser.add_argument("--config", type=Path, default=None, help="YAML file with simulation parameters")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--max-rounds", type=int, default=None)
    parser.add_argument("--log", type=Path, default=None, help="CSV file to write per-round metrics")
    parser.add_argument(
        "--log-format",
        choices=["basic", "detailed"],
        default="detailed",
        help="CSV format to write when --log is provided.",
    )
    parser.add_argument("--summary", type=Path, default=None, help="Optional JSON file for run summary stats.")
    parser.add_argument(
        "--deterministic-log",
        action="store_true",
        help="Write deterministic CSV (round_ms is forced to 0.000 so identical seeds match).",
    )
    parser.add_argument("--print-grid", action="store_true", help="Print the final grid as text.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level.")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        config = SimulationConfig.from_yaml(args.config) if args.config else SimulationConfig()
        result = run_headless(
            config,
            seed=args.seed,
            max_rounds=args.max_rounds,
            log_path=args.log,
            deterministic_log=args.deterministic_log,
            log_format=args.log_format,
            summary_path=args.summary,
            print_grid=args.print_grid,
        )
    except SchellingError as exc:
        logger.error("%s", exc)
        sys.exit(1)
    logger.info(
        "finished after generation %d (%s), satisfaction %.3f",
        result.generation,
        result.reason.value,
        result.satisfaction_ratio or 0.0,
    )


if __name__ == "__main__":
    main()
