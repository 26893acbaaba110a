import csv
import json

import pytest

from schelling.app.headless import run_headless
from schelling.errors import ConfigurationError
from schelling.sim.systems.termination import TerminationReason


def _read_csv(path):
    with path.open(newline="") as handle:
        return list(csv.reader(handle))


def test_headless_basic_log_header(tmp_path, config_factory):
    log_path = tmp_path / "basic.csv"
    result = run_headless(
        config_factory(), seed=1, max_rounds=3, log_path=log_path, deterministic_log=True, log_format="basic"
    )
    rows = _read_csv(log_path)
    assert len(rows) == len(result.history) + 1
    assert rows[0] == [
        "generation",
        "population",
        "satisfied",
        "moves",
        "satisfaction_ratio",
        "round_ms",
    ]
    assert all(row[-1] == "0.000" for row in rows[1:])


def test_headless_detailed_log_matches_grid(tmp_path, config_factory):
    log_path = tmp_path / "detailed.csv"
    config = config_factory()
    run_headless(config, seed=2, max_rounds=4, log_path=log_path, deterministic_log=True)
    rows = _read_csv(log_path)
    header = rows[0]
    idx = {name: i for i, name in enumerate(header)}
    population = sum(config.group_counts().values())
    for generation, row in enumerate(rows[1:], start=1):
        assert int(row[idx["generation"]]) == generation
        assert int(row[idx["population"]]) == population
        assert int(row[idx["red"]]) + int(row[idx["blue"]]) == population
        assert int(row[idx["empty_cells"]]) == config.cell_count - population
        satisfied = int(row[idx["satisfied"]])
        assert satisfied + int(row[idx["unsatisfied"]]) == population
        assert int(row[idx["moves"]]) + int(row[idx["degraded"]]) == int(row[idx["requested"]])
        assert float(row[idx["satisfaction_ratio"]]) == pytest.approx(satisfied / population, abs=1e-4)


def test_headless_summary_output(tmp_path, config_factory):
    summary_path = tmp_path / "summary.json"
    result = run_headless(config_factory(), seed=3, max_rounds=4, deterministic_log=True, summary_path=summary_path)
    payload = json.loads(summary_path.read_text())
    assert payload["seed"] == 3
    assert payload["rounds"] == len(result.history)
    assert payload["generation"] == result.generation
    assert payload["reason"] == result.reason.value
    assert payload["round_ms"]["max"] == 0.0
    assert set(payload["moves"]) == {"min", "max", "mean", "p50", "p90", "p99"}
    assert "satisfaction_ratio" in payload
    assert payload["timeouts"] == 0


def test_headless_prints_final_grid(capsys, config_factory):
    result = run_headless(config_factory(width=4, height=3), max_rounds=2, print_grid=True)
    out = capsys.readouterr().out.strip().splitlines()
    assert len(out) == 3
    assert all(len(line) == 4 for line in out)
    assert "\n".join(out) == result.final.grid.render_text()
    assert result.reason in {TerminationReason.CONVERGED, TerminationReason.MAX_ROUNDS}


def test_headless_rejects_unknown_log_format(config_factory):
    with pytest.raises(ValueError):
        run_headless(config_factory(), log_format="verbose")


def test_headless_surfaces_configuration_errors(config_factory):
    with pytest.raises(ConfigurationError):
        run_headless(config_factory(similarity_threshold=3.0))
