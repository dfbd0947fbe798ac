"""Pytest configuration, Hypothesis profiles and shared test doubles."""

import pytest
from hypothesis import settings

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleeper:
    """Sleeper that never waits; records delays and can simulate interruption.

    Args:
        interrupt_on: 1-based call number on which the sleep is interrupted.
    """

    def __init__(self, interrupt_on: int | None = None) -> None:
        self.delays: list[float] = []
        self._interrupt_on = interrupt_on

    async def __call__(self, delay: float) -> bool:
        self.delays.append(delay)
        return self._interrupt_on is None or len(self.delays) < self._interrupt_on


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio."""
    return "asyncio"
