from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ...config import SimulationConfig
from ...errors import AgentTimeout, InvariantViolation
from ...rng import PLACEMENT_RNG_SALT, RESOLVER_RNG_SALT, DeterministicRng, derive_stream_seed
from ..systems import metrics as metrics_system
from ..systems.resolver import ConflictResolver, Resolution
from ..systems.termination import TerminationPolicy, TerminationReason
from ..types.intent import Intent, RequestMove, Stay
from ..types.metrics import RoundMetrics
from ..types.snapshot import Snapshot, SnapshotMetadata
from .agent import Agent, AgentActor, DecisionSettings, RoundRequest
from .grid import Grid, GridSnapshot

logger = logging.getLogger(__name__)

Observer = Callable[[Snapshot], None]
ActorFactory = Callable[[Agent, DecisionSettings, ThreadPoolExecutor], AgentActor]


class CoordinatorState(str, Enum):
    IDLE = "Idle"
    BROADCASTING = "Broadcasting"
    COLLECTING_INTENTS = "CollectingIntents"
    RESOLVING = "Resolving"
    PUBLISHING = "Publishing"
    TERMINATED = "Terminated"


_TRANSITIONS: Dict[CoordinatorState, Tuple[CoordinatorState, ...]] = {
    CoordinatorState.IDLE: (CoordinatorState.BROADCASTING, CoordinatorState.TERMINATED),
    CoordinatorState.BROADCASTING: (CoordinatorState.COLLECTING_INTENTS,),
    CoordinatorState.COLLECTING_INTENTS: (CoordinatorState.RESOLVING,),
    CoordinatorState.RESOLVING: (CoordinatorState.PUBLISHING,),
    CoordinatorState.PUBLISHING: (CoordinatorState.BROADCASTING, CoordinatorState.TERMINATED),
    CoordinatorState.TERMINATED: (),
}


@dataclass(frozen=True, slots=True)
class RoundResult:
    snapshot: Snapshot
    intents: Tuple[Intent, ...]
    resolution: Resolution
    timeouts: Tuple[int, ...]
    termination: Optional[TerminationReason]


@dataclass(slots=True)
class RunResult:
    reason: TerminationReason
    generation: int
    final: Snapshot
    history: List[RoundMetrics] = field(default_factory=list)

    @property
    def satisfaction_ratio(self) -> Optional[float]:
        return self.final.satisfaction_ratio


class RoundCoordinator:
    """Drives the agents through discrete rounds and owns every grid transition.

    A round broadcasts the current snapshot to all actors, waits until each one
    has answered (or its window has expired), resolves the relocation requests,
    applies them to the grid and publishes the new generation. Only this object
    writes the grid; actors see immutable snapshots and return intents.

    External stop requests are honoured between rounds. Observers registered
    with :meth:`subscribe` are called once per published generation.
    """

    def __init__(
        self,
        config: SimulationConfig,
        grid: Optional[Grid] = None,
        actor_factory: ActorFactory = AgentActor,
    ):
        config.validate()
        self._config = config
        if grid is None:
            placement_rng = DeterministicRng(derive_stream_seed(config.seed, PLACEMENT_RNG_SALT))
            grid = Grid.populate(config.width, config.height, config.group_counts(), placement_rng)
        self._grid = grid
        self._resolver = ConflictResolver(DeterministicRng(derive_stream_seed(config.seed, RESOLVER_RNG_SALT)))
        self._termination = TerminationPolicy(config.max_rounds)
        self._settings = DecisionSettings(
            similarity_threshold=float(config.similarity_threshold),
            radius=config.neighborhood.radius,
            edge_policy=config.edge_policy,
        )
        self._actor_factory = actor_factory
        self._actors: List[AgentActor] = []
        self._actors_by_id: Dict[int, AgentActor] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._state = CoordinatorState.IDLE
        self._stop_requested = False
        self._termination_reason: Optional[TerminationReason] = None
        self._observers: List[Observer] = []
        self._history: List[RoundMetrics] = []
        initial = grid.snapshot()
        self._metadata = SnapshotMetadata(
            width=initial.width,
            height=initial.height,
            seed=config.seed,
            similarity_threshold=float(config.similarity_threshold),
            config_version=config.config_version,
        )
        self._published = Snapshot(generation=initial.generation, grid=initial, metrics=None, metadata=self._metadata)

    @property
    def config(self) -> SimulationConfig:
        return self._config

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def generation(self) -> int:
        return self._published.generation

    @property
    def published(self) -> Snapshot:
        return self._published

    @property
    def history(self) -> List[RoundMetrics]:
        return list(self._history)

    @property
    def termination_reason(self) -> Optional[TerminationReason]:
        return self._termination_reason

    @property
    def agents(self) -> List[Agent]:
        if self._actors:
            return [actor.agent for actor in self._actors]
        snapshot = self._grid.snapshot()
        return [Agent(agent_id, snapshot.group_of(agent_id), snapshot.position_of(agent_id)) for agent_id in snapshot.agent_ids()]

    def snapshot(self) -> GridSnapshot:
        return self._grid.snapshot()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def request_stop(self) -> None:
        self._stop_requested = True

    async def __aenter__(self) -> "RoundCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    async def start(self) -> None:
        if self._executor is not None:
            return
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.scheduler.workers, thread_name_prefix="schelling-agent"
        )
        snapshot = self._grid.snapshot()
        for agent_id in snapshot.agent_ids():
            agent = Agent(agent_id, snapshot.group_of(agent_id), snapshot.position_of(agent_id))
            actor = self._actor_factory(agent, self._settings, self._executor)
            actor.start()
            self._actors.append(actor)
            self._actors_by_id[agent_id] = actor
        logger.info(
            "spawned %d agent actors on a %dx%d grid (%d workers)",
            len(self._actors),
            snapshot.height,
            snapshot.width,
            self._config.scheduler.workers,
        )

    async def shutdown(self) -> None:
        if self._actors:
            await asyncio.gather(*(actor.stop() for actor in self._actors))
        self._actors.clear()
        self._actors_by_id.clear()
        if self._executor is not None:
            executor, self._executor = self._executor, None
            # Actors are stopped; join any decision still running on a worker.
            await asyncio.to_thread(executor.shutdown, wait=True, cancel_futures=True)

    async def step(self) -> RoundResult:
        if self._state == CoordinatorState.TERMINATED:
            raise InvariantViolation("simulation has already terminated", generation=self.generation)
        await self.start()
        started = perf_counter()
        snapshot = self._grid.snapshot()
        try:
            self._transition(CoordinatorState.BROADCASTING)
            replies = self._broadcast(snapshot)
            self._transition(CoordinatorState.COLLECTING_INTENTS)
            intents, timeouts = await self._collect(snapshot.generation, replies)
            self._transition(CoordinatorState.RESOLVING)
            resolution = self._resolver.resolve(intents, snapshot)
            self._transition(CoordinatorState.PUBLISHING)
            next_snapshot = self._grid.apply(resolution.moves)
        except InvariantViolation as exc:
            if exc.generation is None:
                exc.generation = self.generation
            logger.error("aborting run: %s", exc)
            self._state = CoordinatorState.TERMINATED
            raise
        except Exception:
            self._state = CoordinatorState.TERMINATED
            raise

        for move in resolution.moves:
            self._actors_by_id[move.agent_id].relocate(move.target)

        elapsed_ms = (perf_counter() - started) * 1000.0
        round_metrics = metrics_system.create_metrics(
            next_snapshot, self._settings, intents, resolution, len(timeouts), elapsed_ms
        )
        self._history.append(round_metrics)
        self._published = Snapshot(
            generation=next_snapshot.generation,
            grid=next_snapshot,
            metrics=round_metrics,
            metadata=self._metadata,
        )
        logger.debug(
            "generation %d: %d moves, %d degraded, %d timeouts, satisfaction %.3f",
            round_metrics.generation,
            round_metrics.moves,
            round_metrics.degraded,
            round_metrics.timeouts,
            round_metrics.satisfaction_ratio,
        )
        self._notify(self._published)

        if timeouts and not any(isinstance(intent, RequestMove) for intent in intents):
            logger.info(
                "generation %d had no move requests but %d agents did not answer; not treating it as converged",
                next_snapshot.generation,
                len(timeouts),
            )
        reason = self._termination.evaluate(next_snapshot.generation, intents)
        if reason is None and self._stop_requested:
            reason = TerminationReason.CANCELLED
        if reason is not None:
            self._terminate(reason)
        return RoundResult(
            snapshot=self._published,
            intents=tuple(intents),
            resolution=resolution,
            timeouts=tuple(timeouts),
            termination=reason,
        )

    async def run(self) -> RunResult:
        await self.start()
        try:
            while self._state != CoordinatorState.TERMINATED:
                if self._stop_requested:
                    self._terminate(TerminationReason.CANCELLED)
                    break
                await self.step()
        finally:
            await self.shutdown()
        if self._termination_reason is None:
            raise InvariantViolation("run loop ended without a termination reason", generation=self.generation)
        return RunResult(
            reason=self._termination_reason,
            generation=self.generation,
            final=self._published,
            history=list(self._history),
        )

    def _transition(self, target: CoordinatorState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvariantViolation(f"illegal coordinator transition {self._state.value} -> {target.value}")
        logger.debug("coordinator %s -> %s", self._state.value, target.value)
        self._state = target

    def _terminate(self, reason: TerminationReason) -> None:
        self._transition(CoordinatorState.TERMINATED)
        self._termination_reason = reason
        logger.info("simulation terminated at generation %d (%s)", self.generation, reason.value)

    def _broadcast(self, snapshot: GridSnapshot) -> List[Tuple[AgentActor, "asyncio.Future[Intent]"]]:
        loop = asyncio.get_running_loop()
        replies = []
        # Every actor receives the same snapshot object.
        for actor in self._actors:
            reply: asyncio.Future[Intent] = loop.create_future()
            actor.tell(RoundRequest(generation=snapshot.generation, snapshot=snapshot, reply=reply))
            replies.append((actor, reply))
        return replies

    async def _collect(
        self, generation: int, replies: Sequence[Tuple[AgentActor, "asyncio.Future[Intent]"]]
    ) -> Tuple[List[Intent], List[int]]:
        timeout = self._config.scheduler.agent_timeout
        results = await asyncio.gather(
            *(self._await_intent(actor.agent_id, generation, reply, timeout) for actor, reply in replies),
            return_exceptions=True,
        )
        intents: List[Intent] = []
        timeouts: List[int] = []
        for (actor, _), result in zip(replies, results):
            if isinstance(result, AgentTimeout):
                logger.warning("%s; treating it as Stay", result)
                timeouts.append(actor.agent_id)
                intents.append(Stay(actor.agent_id, satisfied=False, timed_out=True))
                continue
            if isinstance(result, BaseException):
                raise result
            if result.agent_id != actor.agent_id:
                raise InvariantViolation(f"agent {actor.agent_id} answered with an intent for agent {result.agent_id}")
            intents.append(result)
        return intents, timeouts

    @staticmethod
    async def _await_intent(
        agent_id: int, generation: int, reply: "asyncio.Future[Intent]", timeout: float
    ) -> Intent:
        try:
            return await asyncio.wait_for(reply, timeout)
        except asyncio.TimeoutError as exc:
            raise AgentTimeout(agent_id, generation, timeout) from exc

    def _notify(self, snapshot: Snapshot) -> None:
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("snapshot observer %r failed at generation %d", observer, snapshot.generation)


def run_simulation(
    config: SimulationConfig,
    grid: Optional[Grid] = None,
    observers: Iterable[Observer] = (),
) -> RunResult:
    async def _run() -> RunResult:
        coordinator = RoundCoordinator(config, grid)
        for observer in observers:
            coordinator.subscribe(observer)
        return await coordinator.run()

    return asyncio.run(_run())
