import asyncio
import json

import pytest

from schelling.app.server import SimulationController
from schelling.config import AppConfig


class RecordingSocket:
    def __init__(self) -> None:
        self.sent = []

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))


def _controller(config_factory, **overrides) -> SimulationController:
    simulation = config_factory(**overrides)
    return SimulationController.from_app_config(AppConfig(simulation=simulation, round_delay=0.0))


def test_backlog_holds_every_published_generation_until_acknowledged(config_factory) -> None:
    controller = _controller(config_factory, similarity_threshold=0.0, width=6, height=6)

    async def exercise() -> None:
        assert controller.backlog.generations() == [0]
        # Threshold 0 satisfies everyone, so the first round converges.
        assert await controller.advance() is False
        assert controller.backlog.generations() == [0, 1]
        controller.backlog.acknowledge(0)
        assert controller.backlog.generations() == [1]
        message = json.loads(controller.backlog.after(0)[0].message)
        assert message["type"] == "snapshot"
        assert message["payload"]["generation"] == 1
        assert message["payload"]["metrics"]["satisfaction_ratio"] == 1.0
        assert len(message["payload"]["cells"]) == 6
        await controller.close()

    asyncio.run(exercise())


def test_broadcast_interval_still_sends_the_final_generation(config_factory) -> None:
    simulation = config_factory(similarity_threshold=0.9, max_rounds=5)
    controller = SimulationController(simulation, broadcast_interval=2, round_delay=0.0)

    async def exercise() -> None:
        while await controller.advance():
            pass
        assert controller.generation == 5
        assert controller.backlog.generations() == [0, 2, 4, 5]
        await controller.close()

    asyncio.run(exercise())


def test_subscribers_receive_frames_in_order(config_factory) -> None:
    controller = _controller(config_factory, similarity_threshold=0.9, max_rounds=3)

    async def exercise() -> None:
        socket = RecordingSocket()
        await controller.attach(socket)
        await controller.advance()
        await controller.advance()
        assert [message["generation"] for message in socket.sent] == [0, 1, 2]
        controller.detach(socket)
        await controller.advance()
        assert len(socket.sent) == 3
        await controller.close()

    asyncio.run(exercise())


def test_reset_starts_a_fresh_run(config_factory) -> None:
    controller = _controller(config_factory, similarity_threshold=0.0, width=6, height=6)

    async def exercise() -> None:
        await controller.advance()
        assert controller.generation == 1
        await controller.reset()
        assert controller.generation == 0
        assert controller.backlog.generations() == [0]
        assert controller.status()["termination"] is None
        await controller.close()

    asyncio.run(exercise())


@pytest.mark.parametrize(("multiplier", "expected"), [(2.0, 2.0), (100.0, 5.0), (0.0, 0.1)])
def test_speed_scales_round_delay(config_factory, multiplier, expected) -> None:
    controller = SimulationController(config_factory(), round_delay=0.2)
    assert controller.set_speed(multiplier) == expected
    assert controller.round_delay == pytest.approx(0.2 / expected)


def test_close_stops_the_pacing_task(config_factory) -> None:
    controller = _controller(config_factory, similarity_threshold=0.9, max_rounds=1000)

    async def exercise() -> None:
        controller.resume()
        await asyncio.sleep(0.05)
        task = controller._pacer
        await controller.close()
        assert task.done()
        assert controller._pacer is None
        assert controller.running is False

    asyncio.run(exercise())
