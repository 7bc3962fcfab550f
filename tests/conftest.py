from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from sandforge.engine.config import RuntimeConfig
from sandforge.engine.orchestrator import Orchestrator
from sandforge.sandbox.memory import InMemorySandbox


class FakeClock:
    """Monotonic clock the tests advance by hand (cooldowns only)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def until():
    return _until


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_config():
    return RuntimeConfig(
        artifact_settle_seconds=0.01,
        install_settle_seconds=0.02,
        start_guard_release_seconds=0.01,
        manifest_retry_seconds=0.01,
    )


@pytest.fixture
def sandbox():
    return InMemorySandbox()


@pytest_asyncio.fixture
async def orchestrator(sandbox, fast_config, clock):
    orch = Orchestrator(sandbox, fast_config, clock=clock)
    orch.attach()
    yield orch
    await orch.shutdown()
