"""Error taxonomy for the collective coordinator."""

from __future__ import annotations


class CoordinationError(Exception):
    """Base exception for coordination errors."""


class ValidationError(CoordinationError, ValueError):
    """Raised for malformed experience, message or state document input."""


class UnknownAgentError(CoordinationError, LookupError):
    """Raised when a message names an agent that is not registered."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Unknown agent: {agent_id}")
        self.agent_id = agent_id


class InvalidOperationError(CoordinationError):
    """Raised for operations that are never valid, e.g. self-trust updates."""


class CapacityError(CoordinationError):
    """Raised at construction when a store or queue has an unusable capacity."""
