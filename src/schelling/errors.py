"""Error taxonomy of the simulation engine.

``ConfigurationError`` and ``InvariantViolation`` propagate to the caller and end
the run. ``AgentTimeout`` is absorbed by the round coordinator, which logs it and
substitutes a ``Stay`` intent for the silent agent.
"""

from __future__ import annotations

from typing import Optional


class SchellingError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(SchellingError, ValueError):
    def __init__(self, parameter: str, message: str):
        self.parameter = parameter
        super().__init__(f"invalid {parameter}: {message}")


class InvariantViolation(SchellingError):
    """A consistency check failed; the grid state can no longer be trusted."""

    def __init__(self, message: str, generation: Optional[int] = None):
        self.detail = message
        self.generation = generation
        super().__init__(message)

    def __str__(self) -> str:
        if self.generation is None:
            return self.detail
        return f"{self.detail} (last published generation {self.generation})"


class AgentTimeout(SchellingError):
    def __init__(self, agent_id: int, generation: int, timeout: float):
        self.agent_id = agent_id
        self.generation = generation
        self.timeout = timeout
        super().__init__(
            f"agent {agent_id} produced no intent for generation {generation} within {timeout:.3f}s"
        )
