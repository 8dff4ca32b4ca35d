"""Shared fixtures for the cost meter tests."""

import pytest
from helpers import FakeClock

from cost_meter.store import InMemoryStateStore


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    store = InMemoryStateStore(clock=clock)
    yield store
    store.clear()
