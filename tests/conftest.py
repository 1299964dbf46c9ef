"""Shared fixtures for governor tests."""

import pytest

from governor.app.rate_limit import (
    BucketStore,
    Environment,
    InMemoryStorage,
    LimiterRegistry,
)


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def store(storage):
    return BucketStore(storage, Environment.DEVELOPMENT)


@pytest.fixture
def registry(storage, clock):
    return LimiterRegistry(
        storage=storage,
        environment=Environment.DEVELOPMENT,
        clock=clock,
    )
