from __future__ import annotations

import asyncio
import contextlib
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Optional

from ..systems.neighborhood import neighbor_counts
from ..types.cells import EdgePolicy, Group, Position
from ..types.intent import Intent, RequestMove, Stay
from .grid import GridSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DecisionSettings:
    similarity_threshold: float
    radius: int = 1
    edge_policy: EdgePolicy = EdgePolicy.EXCLUDE


@dataclass(slots=True)
class Agent:
    id: int
    group: Group
    position: Position

    def decide(self, snapshot: GridSnapshot, settings: DecisionSettings) -> Intent:
        counts = neighbor_counts(
            snapshot,
            self.position,
            self.group,
            radius=settings.radius,
            edge_policy=settings.edge_policy,
        )
        if is_satisfied(counts.same, counts.different, settings.similarity_threshold):
            return Stay(self.id, satisfied=True, counts=counts)
        return RequestMove(self.id, counts=counts)


def is_satisfied(same: int, different: int, threshold: float) -> bool:
    total = same + different
    if total == 0:
        # No occupied neighbors, nothing to compare against.
        return True
    return same / total >= threshold


@dataclass(frozen=True, slots=True)
class RoundRequest:
    generation: int
    snapshot: GridSnapshot
    reply: "asyncio.Future[Intent]"


class AgentActor:
    """One agent running as its own task.

    The actor waits on its mailbox for a round request, computes its decision on
    the shared worker pool and answers through the request's one-shot future. It
    never touches the grid; its position is updated by the coordinator after a
    move has been published.
    """

    def __init__(self, agent: Agent, settings: DecisionSettings, executor: Executor):
        self.agent = agent
        self._settings = settings
        self._executor = executor
        self._mailbox: asyncio.Queue[RoundRequest] = asyncio.Queue()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def agent_id(self) -> int:
        return self.agent.id

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"agent-{self.agent.id}")

    def tell(self, request: RoundRequest) -> None:
        self._mailbox.put_nowait(request)

    def relocate(self, position: Position) -> None:
        self.agent.position = Position(*position)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def decide(self, snapshot: GridSnapshot) -> Intent:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.agent.decide, snapshot, self._settings)

    async def _run(self) -> None:
        while True:
            request = await self._mailbox.get()
            if request.reply.done():
                # The coordinator gave up on this round already.
                continue
            try:
                intent = await self.decide(request.snapshot)
            except Exception as exc:
                if request.reply.done():
                    logger.error(
                        "agent %s failed after generation %s closed", self.agent.id, request.generation, exc_info=exc
                    )
                else:
                    request.reply.set_exception(exc)
                continue
            if request.reply.done():
                logger.debug("agent %s answered generation %s after the window closed", self.agent.id, request.generation)
                continue
            request.reply.set_result(intent)
