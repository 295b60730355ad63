"""Shared fixtures: an isolated in-memory engine per test."""
import random
from datetime import datetime, timedelta, timezone

import pytest

from cohortlab.services.engine import ExperimentationEngine
from cohortlab.services.metrics import StaticMetricsProvider
from cohortlab.services.store import MemoryRecordStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def metrics():
    return StaticMetricsProvider()


@pytest.fixture
def engine(store, metrics, clock):
    """Engine with a seeded random source and a manual clock."""
    return ExperimentationEngine(
        store=store,
        metrics=metrics,
        rng=random.Random(42),
        clock=clock,
    )
