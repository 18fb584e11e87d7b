"""Shared fixtures."""

from __future__ import annotations

import logging

import pytest

from collective.engine.coordinator import Coordinator
from collective.learning.models import Experience
from collective.mesh.communication import CommunicationMesh
from collective.mesh.trust_ledger import TrustLedger


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _detach_log_handlers():
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if type(handler) is logging.StreamHandler:
            root.removeHandler(handler)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock: FakeClock) -> TrustLedger:
    return TrustLedger(clock=clock)


@pytest.fixture
def mesh(ledger: TrustLedger, clock: FakeClock) -> CommunicationMesh:
    m = CommunicationMesh(ledger, clock=clock)
    m.register("alice", ["code"])
    m.register("bob", ["test"])
    return m


@pytest.fixture
def coordinator() -> Coordinator:
    return Coordinator()


def make_experience(
    task_type: str = "code-review",
    agents: tuple[str, ...] = ("code", "test"),
    success: bool = True,
    quality: float = 0.9,
    timestamp: float | None = None,
    **extra: object,
) -> Experience:
    return Experience.create(
        task_type, agents, success, quality, timestamp=timestamp, **extra  # type: ignore[arg-type]
    )
