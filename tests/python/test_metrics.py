from __future__ import annotations

import pytest

from schelling.errors import AgentTimeout, InvariantViolation
from schelling.rng import PLACEMENT_RNG_SALT, RESOLVER_RNG_SALT, DeterministicRng, derive_stream_seed
from schelling.sim.core.agent import DecisionSettings
from schelling.sim.core.grid import Grid
from schelling.sim.systems.metrics import create_metrics
from schelling.sim.systems.resolver import Resolution
from schelling.sim.systems.termination import TerminationPolicy, TerminationReason, is_settled
from schelling.sim.types.cells import Position
from schelling.sim.types.intent import Move, RequestMove, Stay


def test_metrics_measure_the_published_grid():
    # B at (0,1) has only a red neighbour; both reds have a red neighbour.
    snapshot = Grid.from_layout([".BRR"], generation=1).snapshot()
    intents = [RequestMove(0), RequestMove(1), Stay(2, satisfied=False, timed_out=True)]
    resolution = Resolution(moves=[Move(1, Position(0, 0), Position(0, 2))], degraded=[0])
    metrics = create_metrics(snapshot, DecisionSettings(similarity_threshold=0.5), intents, resolution, 1, 2.5)
    assert metrics.generation == 1
    assert metrics.population == 3
    assert (metrics.satisfied, metrics.unsatisfied) == (2, 1)
    assert (metrics.requested, metrics.moves, metrics.degraded, metrics.timeouts) == (2, 1, 1, 1)
    assert metrics.satisfaction_ratio == pytest.approx(2 / 3)
    assert metrics.average_similarity == pytest.approx((0.0 + 0.5 + 1.0) / 3)
    assert metrics.round_duration_ms == 2.5


def test_metrics_for_an_empty_grid():
    snapshot = Grid.from_layout(["..", ".."]).snapshot()
    metrics = create_metrics(snapshot, DecisionSettings(similarity_threshold=0.5), [], Resolution(), 0, 0.0)
    assert metrics.population == 0
    assert metrics.satisfaction_ratio == 1.0
    assert metrics.average_similarity == 0.0


def test_termination_prefers_convergence_over_round_limit():
    policy = TerminationPolicy(max_rounds=3)
    assert policy.evaluate(3, [Stay(0)]) == TerminationReason.CONVERGED
    assert policy.evaluate(3, [RequestMove(0)]) == TerminationReason.MAX_ROUNDS
    assert policy.evaluate(2, [Stay(0), RequestMove(1)]) is None
    assert policy.evaluate(1, []) == TerminationReason.CONVERGED


def test_round_with_a_silent_agent_is_not_settled():
    intents = [Stay(0), Stay(1, satisfied=False, timed_out=True)]
    assert not is_settled(intents)
    assert TerminationPolicy(max_rounds=5).evaluate(2, intents) is None
    assert TerminationPolicy(max_rounds=5).evaluate(5, intents) == TerminationReason.MAX_ROUNDS


def _shuffled(rng: DeterministicRng) -> list[int]:
    items = list(range(20))
    rng.shuffle(items)
    return items


def test_rng_streams_are_reproducible_and_independent():
    assert _shuffled(DeterministicRng(derive_stream_seed(7, PLACEMENT_RNG_SALT))) == _shuffled(
        DeterministicRng(derive_stream_seed(7, PLACEMENT_RNG_SALT))
    )
    assert _shuffled(DeterministicRng(derive_stream_seed(7, PLACEMENT_RNG_SALT))) != _shuffled(
        DeterministicRng(derive_stream_seed(7, RESOLVER_RNG_SALT))
    )
    assert derive_stream_seed(7, PLACEMENT_RNG_SALT) != derive_stream_seed(8, PLACEMENT_RNG_SALT)


def test_error_messages_carry_context():
    timeout = AgentTimeout(4, 9, 0.25)
    assert "agent 4" in str(timeout)
    assert "generation 9" in str(timeout)
    violation = InvariantViolation("two agents on one cell")
    assert str(violation) == "two agents on one cell"
    violation.generation = 12
    assert str(violation) == "two agents on one cell (last published generation 12)"
