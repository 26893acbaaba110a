from __future__ import annotations

from typing import Sequence

from ..core.agent import Agent, DecisionSettings
from ..core.grid import GridSnapshot
from ..types.intent import Intent, RequestMove, Stay
from ..types.metrics import RoundMetrics
from .resolver import Resolution


def create_metrics(
    snapshot: GridSnapshot,
    settings: DecisionSettings,
    intents: Sequence[Intent],
    resolution: Resolution,
    timeouts: int,
    duration_ms: float,
) -> RoundMetrics:
    satisfied = 0
    similarities = []
    for agent_id in snapshot.agent_ids():
        agent = Agent(agent_id, snapshot.group_of(agent_id), snapshot.position_of(agent_id))
        verdict = agent.decide(snapshot, settings)
        if isinstance(verdict, Stay):
            satisfied += 1
        if verdict.counts is not None and verdict.counts.similarity is not None:
            similarities.append(verdict.counts.similarity)
    population = snapshot.population
    return RoundMetrics(
        generation=snapshot.generation,
        population=population,
        satisfied=satisfied,
        unsatisfied=population - satisfied,
        requested=sum(1 for intent in intents if isinstance(intent, RequestMove)),
        moves=len(resolution.moves),
        degraded=len(resolution.degraded),
        timeouts=timeouts,
        satisfaction_ratio=satisfied / population if population else 1.0,
        average_similarity=sum(similarities) / len(similarities) if similarities else 0.0,
        round_duration_ms=duration_ms,
    )
