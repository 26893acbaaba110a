from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from ..config import AppConfig, SimulationConfig
from ..errors import SchellingError
from ..sim.core.coordinator import CoordinatorState, RoundCoordinator
from ..sim.types.snapshot import Snapshot

logger = logging.getLogger(__name__)

MIN_SPEED = 0.1
MAX_SPEED = 5.0


@dataclass(frozen=True, slots=True)
class Frame:
    generation: int
    message: str

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "Frame":
        message = {"type": "snapshot", "generation": snapshot.generation, "payload": snapshot.to_payload()}
        return cls(snapshot.generation, json.dumps(message))


class FrameBacklog:
    """Published frames kept until a client acknowledges them, oldest first."""

    def __init__(self) -> None:
        self._frames: deque[Frame] = deque()

    def __len__(self) -> int:
        return len(self._frames)

    def generations(self) -> List[int]:
        return [frame.generation for frame in self._frames]

    def push(self, snapshot: Snapshot) -> None:
        if self._frames and self._frames[-1].generation >= snapshot.generation:
            return
        self._frames.append(Frame.from_snapshot(snapshot))

    def after(self, generation: int) -> List[Frame]:
        return [frame for frame in self._frames if frame.generation > generation]

    def acknowledge(self, generation: int) -> None:
        while self._frames and self._frames[0].generation <= generation:
            self._frames.popleft()

    def clear(self) -> None:
        self._frames.clear()


@dataclass
class Subscriber:
    websocket: WebSocket
    last_sent: int = -1

    async def catch_up(self, backlog: FrameBacklog) -> None:
        for frame in backlog.after(self.last_sent):
            await self.websocket.send_text(frame.message)
            self.last_sent = frame.generation


class SimulationController:
    """Paces the coordinator and relays its published frames to websocket clients.

    Frames enter the backlog from a coordinator subscription, so every client sees
    exactly what observers see. Control calls start, pause, reset or re-pace the
    run; nothing here writes the grid.
    """

    def __init__(self, config: SimulationConfig, broadcast_interval: int = 1, round_delay: float = 0.05):
        self.config = config
        self.broadcast_interval = max(1, broadcast_interval)
        self.base_delay = max(0.0, round_delay)
        self.speed = 1.0
        self.running = False
        self.last_error: Optional[str] = None
        self.backlog = FrameBacklog()
        self.subscribers: Dict[WebSocket, Subscriber] = {}
        self._lock = asyncio.Lock()
        self._pacer: Optional[asyncio.Task[None]] = None
        self.coordinator = self._new_coordinator()

    @classmethod
    def from_app_config(cls, app_config: AppConfig) -> "SimulationController":
        return cls(app_config.simulation, app_config.broadcast_interval, app_config.round_delay)

    @property
    def generation(self) -> int:
        return self.coordinator.generation

    @property
    def round_delay(self) -> float:
        return self.base_delay / self.speed

    def set_speed(self, multiplier: float) -> float:
        self.speed = max(MIN_SPEED, min(MAX_SPEED, multiplier))
        logger.info("round delay set to %.3fs (x%.2f)", self.round_delay, self.speed)
        return self.speed

    def _new_coordinator(self) -> RoundCoordinator:
        coordinator = RoundCoordinator(self.config)
        coordinator.subscribe(self._on_published)
        self.backlog.push(coordinator.published)
        return coordinator

    def _on_published(self, snapshot: Snapshot) -> None:
        if snapshot.generation % self.broadcast_interval == 0:
            self.backlog.push(snapshot)

    def resume(self) -> None:
        if self._pacer is None:
            self._pacer = asyncio.create_task(self._pace(), name="schelling-pacer")
        self.running = True

    def pause(self) -> None:
        self.running = False

    async def close(self) -> None:
        self.running = False
        if self._pacer is not None:
            pacer, self._pacer = self._pacer, None
            pacer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pacer
        async with self._lock:
            await self.coordinator.shutdown()

    async def reset(self) -> None:
        async with self._lock:
            await self.coordinator.shutdown()
            self.backlog.clear()
            self.coordinator = self._new_coordinator()
            self.last_error = None
        for subscriber in self.subscribers.values():
            subscriber.last_sent = -1
        await self.flush()

    async def advance(self) -> bool:
        """Run one round; False once the run has terminated or failed."""
        async with self._lock:
            if self.coordinator.state == CoordinatorState.TERMINATED:
                return False
            try:
                result = await self.coordinator.step()
            except SchellingError as exc:
                logger.error("simulation stopped: %s", exc)
                self.last_error = str(exc)
                await self.coordinator.shutdown()
                return False
            if result.termination is not None:
                # The last generation goes out even off the broadcast interval.
                self.backlog.push(result.snapshot)
                await self.coordinator.shutdown()
        await self.flush()
        return result.termination is None

    async def _pace(self) -> None:
        while True:
            await asyncio.sleep(self.round_delay)
            if self.running and not await self.advance():
                self.running = False

    async def flush(self) -> None:
        gone = []
        for websocket, subscriber in list(self.subscribers.items()):
            try:
                await subscriber.catch_up(self.backlog)
            except WebSocketDisconnect:
                gone.append(websocket)
        for websocket in gone:
            self.subscribers.pop(websocket, None)

    async def attach(self, websocket: WebSocket) -> Subscriber:
        subscriber = Subscriber(websocket)
        self.subscribers[websocket] = subscriber
        await subscriber.catch_up(self.backlog)
        return subscriber

    def detach(self, websocket: WebSocket) -> None:
        self.subscribers.pop(websocket, None)

    def status(self) -> Dict[str, object]:
        published = self.coordinator.published
        reason = self.coordinator.termination_reason
        return {
            "running": self.running,
            "generation": published.generation,
            "state": self.coordinator.state.value,
            "population": published.grid.population,
            "satisfaction_ratio": published.satisfaction_ratio,
            "termination": None if reason is None else reason.value,
            "error": self.last_error,
            "round_delay": self.round_delay,
            "metrics": None if published.metrics is None else asdict(published.metrics),
        }


controller = SimulationController.from_app_config(AppConfig())


@contextlib.asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    controller.resume()
    try:
        yield
    finally:
        await controller.close()


app = FastAPI(title="Schelling Segregation Simulation", lifespan=lifespan)


@app.get("/api/status")
async def status() -> JSONResponse:
    return JSONResponse(controller.status())


@app.get("/api/snapshot")
async def current_snapshot() -> JSONResponse:
    return JSONResponse(controller.coordinator.published.to_payload())


@app.post("/api/control/start")
async def start_simulation() -> JSONResponse:
    controller.resume()
    return JSONResponse({"running": True})


@app.post("/api/control/stop")
async def stop_simulation() -> JSONResponse:
    controller.pause()
    return JSONResponse({"running": False})


@app.post("/api/control/reset")
async def reset_simulation() -> JSONResponse:
    await controller.reset()
    return JSONResponse({"running": controller.running, "generation": controller.generation})


@app.post("/api/control/speed")
async def set_speed(payload: dict) -> JSONResponse:
    speed = controller.set_speed(float(payload.get("multiplier", 1.0)))
    return JSONResponse({"multiplier": speed, "round_delay": controller.round_delay})


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    await websocket.accept()
    try:
        await controller.attach(websocket)
        while True:
            message = await websocket.receive_text()
            try:
                payload = json.loads(message)
            except json.JSONDecodeError:
                logger.debug("ignoring malformed client message %r", message)
                continue
            if not isinstance(payload, dict) or payload.get("type") != "ack":
                continue
            generation = payload.get("generation")
            if isinstance(generation, int):
                controller.backlog.acknowledge(generation)
    except WebSocketDisconnect:
        pass
    finally:
        controller.detach(websocket)


__all__ = ["app", "controller"]
